from pgqueue.core.scheduler.service import Scheduler

__all__ = ['Scheduler']
