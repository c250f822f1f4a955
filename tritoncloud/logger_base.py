"""Custom Logging class expands log levels.

TRACE is below DEBUG and carries per-request lines, NOTICE is between INFO
and WARNING.
"""
import logging

logging.TRACE = logging.DEBUG - 5
logging.addLevelName(logging.TRACE, 'TRACE')
logging.NOTICE = logging.INFO + 5
logging.addLevelName(logging.NOTICE, 'NOTICE')


def trace(self, msg, *args, **kwargs):
    """TRACE level logs."""
    if self.isEnabledFor(logging.TRACE):
        self._log(logging.TRACE, msg, args, **kwargs)


def notice(self, msg, *args, **kwargs):
    """NOTICE level logs."""
    if self.isEnabledFor(logging.NOTICE):
        self._log(logging.NOTICE, msg, args, **kwargs)


logging.Logger.trace = trace
logging.Logger.notice = notice


def get_logger(name: str = None, logger: logging.Logger = None):
    """Return the given logger, else a module logger that stays silent unless the application configures handlers."""
    if logger:
        return logger
    logger = logging.getLogger(name)
    logger.addHandler(logging.NullHandler())
    return logger
