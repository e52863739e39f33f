from .jobs import setup_scheduler, node_status_job

__all__ = ["setup_scheduler", "node_status_job"]
