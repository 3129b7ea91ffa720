"""
Jobs package - Tarefas em background e agendamento
"""
from jobs.scheduler import JobScheduler, RECONCILE_JOB_ID

__all__ = ['JobScheduler', 'RECONCILE_JOB_ID']
