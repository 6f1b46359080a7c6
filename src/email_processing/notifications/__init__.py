from .dedup import NotificationDedupCache
from .scheduler import DelayedTaskScheduler, ProcessingDelayPolicy

__all__ = ['NotificationDedupCache', 'DelayedTaskScheduler', 'ProcessingDelayPolicy']
