# Re-exports from core.logger so modules can import `src.utils.logger`

from .core.logger import get_logger, set_console_level, shutdown_logging

__all__ = ["get_logger", "set_console_level", "shutdown_logging"]
