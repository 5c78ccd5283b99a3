"""
Flask CLI commands for externally scheduled jobs (cron, systemd timers)
"""
import logging
import click
from quoteflow.extensions import db

logger = logging.getLogger(__name__)

def register_commands(app):
    """Attach the scheduled-job commands to the app's CLI"""

    @app.cli.command('send-reminders')
    @click.option('--hours', 'hours_since_sent', type=int, default=None,
                  help='Only quotes sent at least this many hours ago (default: REMINDER_DEFAULT_HOURS).')
    @click.option('--quote-id', type=int, default=None, help='Restrict the run to one quote.')
    def send_reminders_command(hours_since_sent, quote_id):
        """Send due reminders to suppliers who have not answered."""
        from quoteflow.services.dispatch import send_reminders

        try:
            result = send_reminders(hours_since_sent=hours_since_sent, quote_id=quote_id)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Reminder run failed: {e}")
            raise click.ClickException(str(e))

        click.echo(f"Reminders sent: {result['reminders_sent']}")
        for item in result['results']:
            state = 'ok' if item['success'] else f"failed ({item.get('error')})"
            click.echo(f"  quote {item['quote_id']} supplier {item['supplier_id']}: {state}")
