import asyncio
import logging

import click

from billing.core.config import settings
from billing.core.database import SessionLocal
from billing.events.publisher import EventPublisher
from billing.services.payment_retry_processor import PaymentRetryProcessor
from billing.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@click.group()
def cli():
    """Periodic billing jobs (run from cron or a scheduler)"""
    logging.basicConfig(level=logging.INFO)


@cli.command('trial-expiry')
def trial_expiry():
    """Convert subscriptions whose trial has ended"""
    db = SessionLocal()
    try:
        sweep = SubscriptionService(db).process_trial_expiry()
        asyncio.run(EventPublisher(db).publish(sweep.events))
        click.echo(f"Trial expiry: processed {sweep.processed}, converted {sweep.succeeded}, failed {sweep.failed}")
    except Exception as e:
        db.rollback()
        logger.error(f"trial-expiry: Failure - {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def renewals():
    """Renew subscriptions whose period ends within the look-ahead window"""
    db = SessionLocal()
    try:
        sweep = SubscriptionService(db).process_renewals()
        asyncio.run(EventPublisher(db).publish(sweep.events))
        click.echo(f"Renewals: processed {sweep.processed}, renewed {sweep.succeeded}, failed {sweep.failed}")
    except Exception as e:
        db.rollback()
        logger.error(f"renewals: Failure - {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command('process-retries')
def process_retries():
    """Attempt every payment retry that is due"""
    db = SessionLocal()
    try:
        result = asyncio.run(PaymentRetryProcessor(db).process_retries())
        click.echo(
            f"Payment retries: processed {result.processed}, succeeded {result.succeeded}, "
            f"failed {result.failed}, exhausted {result.exhausted}, errors {result.errors}, "
            f"skipped {result.skipped} ({result.duration_ms}ms)"
        )
    except Exception as e:
        db.rollback()
        logger.error(f"process-retries: Failure - {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command('cleanup-retries')
@click.option('--days', default=settings.retry_retention_days, show_default=True, type=int,
              help='Delete finished retry records older than this many days')
def cleanup_retries(days):
    """Delete old succeeded, exhausted and cancelled retry records"""
    db = SessionLocal()
    try:
        deleted = PaymentRetryProcessor(db).cleanup_old_retries(days)
        click.echo(f"Deleted {deleted} retry records older than {days} days")
    except Exception as e:
        db.rollback()
        logger.error(f"cleanup-retries: Failure - {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command('relay-events')
@click.option('--limit', default=100, show_default=True, type=int, help='Maximum events to relay')
def relay_events(limit):
    """Re-send domain events that were committed but never published"""
    db = SessionLocal()
    try:
        delivered = asyncio.run(EventPublisher(db).relay_pending(limit))
        click.echo(f"Relayed {delivered} events")
    except Exception as e:
        db.rollback()
        logger.error(f"relay-events: Failure - {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command('retry-stats')
def retry_stats():
    """Print payment retry counts per status"""
    db = SessionLocal()
    try:
        stats = PaymentRetryProcessor(db).log_statistics()
        click.echo(f"Total: {stats.total}")
        click.echo(f"Pending: {stats.pending}")
        click.echo(f"Retrying: {stats.retrying}")
        click.echo(f"Succeeded: {stats.succeeded}")
        click.echo(f"Exhausted: {stats.exhausted}")
        click.echo(f"Cancelled: {stats.cancelled}")
        click.echo(f"Success rate: {stats.success_rate:.2f}%")
    finally:
        db.close()


if __name__ == '__main__':
    cli()
