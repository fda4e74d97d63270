from .logger import setup_logging, get_logger, pipeline_logger, ContextLogger

__all__ = [
    "setup_logging",
    "get_logger",
    "pipeline_logger",
    "ContextLogger",
]
