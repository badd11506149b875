"""
Varredura periódica (thread daemon no mesmo processo)

Não há lock com as requisições: se a varredura e uma requisição mexerem na
mesma matrícula, vale a última escrita.
"""
import logging
import threading

import click

from models import db
from enrollment import expire_overdue_assignments, flag_lapsed_certifications, reset_reminder_counters

log = logging.getLogger(__name__)


def run_sweep(now=None) -> dict:
    return {
        "expired": expire_overdue_assignments(now),
        "lapsed": flag_lapsed_certifications(now),
        "remindersReset": reset_reminder_counters(now),
    }


class PeriodicSweeper:
    def __init__(self, app, interval_seconds=3600):
        self.app = app
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="periodic-sweeper", daemon=True)
        self._thread.start()
        log.info("Varredura periódica ativa (a cada %ss)", self.interval)

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)

    def run_once(self):
        with self.app.app_context():
            try:
                summary = run_sweep()
                log.debug("Varredura concluída: %s", summary)
                return summary
            except Exception as e:
                db.session.rollback()
                log.warning("Falha na varredura periódica: %s", e)
                return None
            finally:
                db.session.remove()

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.run_once()


def register_commands(app):

    @app.cli.command("sweep")
    def sweep_cmd():
        """Expira atribuições vencidas, marca certificações vencidas e rearma lembretes."""
        summary = run_sweep()
        click.echo(f"• Varredura: {summary}")

    @app.cli.command("reset-reminders")
    def reset_reminders_cmd():
        """Zera remindersSent das matrículas com mais de 30 dias."""
        count = reset_reminder_counters()
        click.echo(f"• {count} matrícula(s) com lembretes rearmados.")
