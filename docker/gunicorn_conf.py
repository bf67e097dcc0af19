# Gunicorn configuration for GFSKeeper
# Handles scheduler initialization across multiple workers
#
#   gunicorn -c docker/gunicorn_conf.py "gfskeeper:create_app()"

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = f"0.0.0.0:{os.environ.get('PORT', '5000')}"
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    Designates the first worker (worker.age == 0) as the scheduler owner.
    Only this worker starts APScheduler; the job lease still guards against
    overlapping runs if another process runs the same job.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    from gfskeeper.scheduler import start_background_scheduler

    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
        start_background_scheduler(worker.wsgi)
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
