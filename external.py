"""
Bounded calls into collaborators (eligibility, distance).

A collaborator that hangs must not hang the request: the call runs on a
shared worker pool and is abandoned after ``timeout`` seconds.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import config
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="collaborator")


def call_with_timeout(name: str, fn, *args, timeout: float = None, **kwargs):
    timeout = config.EXTERNAL_CALL_TIMEOUT if timeout is None else timeout
    future = _pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning("%s did not answer within %.1fs", name, timeout)
        raise ExternalServiceError(f"{name} timed out", service=name, timeout=timeout)
    except ExternalServiceError:
        raise
    except Exception as e:
        logger.warning("%s failed: %s", name, e)
        raise ExternalServiceError(f"{name} failed: {e}", service=name) from e
