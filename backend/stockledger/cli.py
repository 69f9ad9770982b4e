# Overview: Flask CLI command groups for schema bootstrap, forecasting, alerts, and usage reporting.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to stockledger (PowerShell: $env:FLASK_APP="stockledger").
# - Use: python -m flask <group> <command> [options]
#
# Schema bootstrap:
# - python -m flask db-admin init
#   Create all tables (use `flask db upgrade` for migration-managed databases).
#
# Forecasting:
# - python -m flask forecast run-all
#   Re-forecast every eligible item/property pair and print a summary.
# - python -m flask forecast recommendations [--property-id P1]
#   List levels that should be reordered, most urgent first.
#
# Alerts:
# - python -m flask alerts low-stock [--property-id P1]
#   List LOW/CRITICAL levels.
#
# Usage reporting:
# - python -m flask usage flush
#   Deliver queued usage reports and shut the collector down.

import math

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import alert_service, forecasting_service
from .services.usage_service import get_collector


@click.group('db-admin')
def db_admin_group():
    """Schema bootstrap commands."""


@db_admin_group.command('init')
@with_appcontext
def init_db():
    """Create all tables for the configured database (idempotent)."""
    db.create_all()
    click.echo(f"PASS Tables ready on {current_app.config['SQLALCHEMY_DATABASE_URI']}")


@click.group('forecast')
def forecast_group():
    """Demand forecasting commands."""


@forecast_group.command('run-all')
@with_appcontext
def run_all_forecasts():
    """Forecast every active consumable item at every property holding it."""
    results = forecasting_service.update_all_forecasts()
    if not results:
        click.echo("No items with recent consumption.")
        return

    ok = 0
    for r in results:
        if r["success"]:
            ok += 1
            forecast = r["forecast"]
            click.echo(
                f"PASS item={r['item_id']} property={r['property_id']} "
                f"model={forecast['model_version']} recommended_order={forecast['recommended_order']}"
            )
        else:
            click.echo(f"SKIP item={r['item_id']} property={r['property_id']}: {r['error']}")
    click.echo(f"\n{ok}/{len(results)} forecasts updated.")


@forecast_group.command('recommendations')
@click.option('--property-id', default=None, help='Limit to one property')
@with_appcontext
def reorder_recommendations(property_id):
    """List levels whose available stock is below forecast lead-time demand."""
    recs = forecasting_service.get_reorder_recommendations(property_id)
    if not recs:
        click.echo("No reorders needed.")
        return

    for r in recs:
        days = "inf" if math.isinf(r["days_of_stock"]) else f"{r['days_of_stock']:.1f}"
        click.echo(
            f"{r['sku']:<16} {r['location_path'] or r['property_id']:<32} "
            f"stock={r['current_stock']:<6} reorder_level={r['reorder_level']:<6} "
            f"order={r['recommended_order']:<6} days={days}"
        )


@click.group('alerts')
def alerts_group():
    """Stock alert commands."""


@alerts_group.command('low-stock')
@click.option('--property-id', default=None, help='Limit to one property')
@with_appcontext
def low_stock(property_id):
    """List LOW and CRITICAL inventory levels."""
    rows = alert_service.get_low_stock_alerts(property_id)
    if not rows:
        click.echo("No low stock levels.")
        return

    for r in rows:
        click.echo(
            f"{r['alert_level']:<9} {r['sku']:<16} {r['location_path'] or r['property_id']:<32} "
            f"qty={r['current_quantity']} reorder_point={r['reorder_point']}"
        )


@click.group('usage')
def usage_group():
    """Usage reporting commands."""


@usage_group.command('flush')
@with_appcontext
def flush_usage():
    """Deliver queued usage reports and stop the collector."""
    collector = get_collector(current_app)
    collector.shutdown()
    click.echo(f"PASS {type(collector).__name__} flushed and shut down.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(db_admin_group)
    app.cli.add_command(forecast_group)
    app.cli.add_command(alerts_group)
    app.cli.add_command(usage_group)
