"""
Background Jobs - Tarefas em background e agendamento
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta
import logging

from constants import RECONCILE_INTERVAL_HOURS, RECONCILE_INITIAL_DELAY_MINUTES

logger = logging.getLogger('main')

RECONCILE_JOB_ID = 'reconcile_titles'


class JobScheduler:
    """Gerenciador de tarefas em background"""

    def __init__(self, scheduler=None):
        self.scheduler = scheduler or BackgroundScheduler(timezone='UTC')
        self._jobs_registered = False

    def init_app(self, reconciler, interval_hours=RECONCILE_INTERVAL_HOURS,
                 initial_delay_minutes=RECONCILE_INITIAL_DELAY_MINUTES, start=True):
        """Registrar tarefas e iniciar o scheduler"""
        self._register_jobs(reconciler, interval_hours, initial_delay_minutes)
        if start and not self.scheduler.running:
            self.scheduler.start()
            logger.info("Job scheduler initialized")

    def _register_jobs(self, reconciler, interval_hours, initial_delay_minutes):
        if self._jobs_registered:
            return

        # Reconciliation pass, first run shortly after startup
        self.scheduler.add_job(
            func=self._reconcile_job,
            trigger=IntervalTrigger(
                hours=interval_hours,
                start_date=datetime.now() + timedelta(minutes=initial_delay_minutes),
            ),
            id=RECONCILE_JOB_ID,
            name='Reconcile stored bundles',
            args=[reconciler],
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        self._jobs_registered = True
        logger.info(f"Background jobs registered (reconciliation every {interval_hours}h)")

    def get_job(self, job_id=RECONCILE_JOB_ID):
        return self.scheduler.get_job(job_id)

    def _reconcile_job(self, reconciler):
        """Tarefa de reconciliação"""
        try:
            reconciler.run_pass()
        except Exception as e:
            logger.exception(f"Reconciliation job failed: {e}")

    def shutdown(self):
        """Encerrar scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Job scheduler shutdown")
