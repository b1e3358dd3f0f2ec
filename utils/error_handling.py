import functools
import logging
import time
from utils.exceptions import DegreeDayMLException

def _engine_logger(args) -> logging.Logger:
    engine = args[0] if args else None
    return getattr(engine, 'logger', None) or logging.getLogger()

def handle_engine_errors(operation_name: str):
    """
    Decorator for engine entry points.

    Project exceptions propagate unchanged; anything else is logged with its
    traceback and re-raised as DegreeDayMLException naming the operation.
    Successful calls log their wall-clock duration at DEBUG level.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except DegreeDayMLException:
                raise
            except Exception as e:
                _engine_logger(args).error(f"{operation_name} failed: {e}", exc_info=True)
                raise DegreeDayMLException(f"{operation_name} failed: {str(e)}") from e
            _engine_logger(args).debug(f"{operation_name} finished in {time.perf_counter() - start:.2f}s")
            return result
        return wrapper
    return decorator
