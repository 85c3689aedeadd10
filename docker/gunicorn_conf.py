# Gunicorn configuration for Cloudkeeper
#   gunicorn -c docker/gunicorn_conf.py 'cloudkeeper:create_app()'
# Only one worker may own the backup scheduler: two schedulers would start
# overlapping runs that the in-process run lock cannot see.

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '127.0.0.1:8000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
timeout = 60


def post_fork(server, worker):
    """
    Designate the first spawned worker (age 1) as the scheduler owner.

    Runs in the worker before the application is loaded, so create_app()
    sees SCHEDULER_WORKER.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid}: scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid}: HTTP only, scheduler disabled")
