"""Management script for the database, Stripe credentials and plans"""

from decimal import Decimal

import click
from flask.cli import FlaskGroup

from subscription_sync import create_app
from subscription_sync.errors import BillingError
from subscription_sync.extensions import db
from subscription_sync.models import StripeConfig, SubscriptionPlan
from subscription_sync.services.credentials import resolve_active_credentials
from subscription_sync.services.environment import (
    PriceCompatibilityValidator,
    classify_secret_key,
    normalize_price_reference,
    normalize_product_reference,
)
from subscription_sync.services.stripe_service import StripeService

cli = FlaskGroup(create_app=create_app)


@cli.command("init-db")
def init_db():
    """Create all tables"""
    db.create_all()
    click.echo("Database initialized")


@cli.command("set-stripe-config")
@click.option("--secret-key", required=True)
@click.option("--publishable-key", default=None)
@click.option("--webhook-secret", default=None)
@click.option("--default-product-id", default=None)
def set_stripe_config(secret_key, publishable_key, webhook_secret, default_product_id):
    """Store a credential set and make it the only active one"""
    mode = classify_secret_key(secret_key)
    if mode.value == "unknown":
        raise click.BadParameter("not a sk_/rk_ test or live key", param_hint="--secret-key")

    StripeConfig.query.update({"is_active": False})
    record = StripeConfig(
        secret_key=secret_key.strip(),
        publishable_key=publishable_key,
        webhook_secret=webhook_secret,
        environment=mode.value,
        default_product_id=default_product_id,
        is_active=True,
    )
    db.session.add(record)
    db.session.commit()
    click.echo(f"Activated {mode.value} Stripe configuration {record.id}")


@cli.command("create-plan")
@click.option("--name", required=True)
@click.option("--price", required=True, type=Decimal)
@click.option("--stripe-price-id", default=None)
@click.option("--stripe-product-id", default=None)
@click.option("--description", default=None)
def create_plan(name, price, stripe_price_id, stripe_product_id, description):
    """Add a plan to the catalogue"""
    try:
        if stripe_price_id:
            stripe_price_id = normalize_price_reference(stripe_price_id)
        stripe_product_id = normalize_product_reference(stripe_product_id)
    except BillingError as e:
        raise click.BadParameter(e.details)

    plan = SubscriptionPlan(
        name=name,
        price=price,
        description=description,
        stripe_price_id=stripe_price_id,
        stripe_product_id=stripe_product_id,
    )
    db.session.add(plan)
    db.session.commit()
    click.echo(f"Created plan {plan.id} ({plan.name}, {plan.price})")


@cli.command("check-plans")
def check_plans():
    """Check every active paid plan against the active Stripe credentials"""
    service = StripeService(resolve_active_credentials())
    validator = PriceCompatibilityValidator(service)
    failures = 0

    for plan in SubscriptionPlan.query.filter_by(is_active=True).order_by(SubscriptionPlan.name):
        if plan.is_free:
            click.echo(f"- {plan.name}: free plan, skipped")
            continue
        try:
            price_id = normalize_price_reference(plan.stripe_price_id)
            product_id = normalize_product_reference(plan.stripe_product_id or service.credentials.default_product_id)
            verdict = validator.validate(price_id, product_id)
        except BillingError as e:
            failures += 1
            click.echo(f"x {plan.name}: {e.details}")
            continue
        click.echo(f"+ {plan.name}: {price_id} {verdict.label} ({verdict.key_mode.value} key)")

    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
