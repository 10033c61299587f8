# Utils package
from .logging_utils import setup_logging, get_logger, LogTimer
from .ticker import PeriodicTicker

__all__ = ['setup_logging', 'get_logger', 'LogTimer', 'PeriodicTicker']
