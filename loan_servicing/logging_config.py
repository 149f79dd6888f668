"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all loan servicing operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""
    
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
            "loan_id": getattr(record, 'loan_id', None),
            "actor": getattr(record, 'actor', None),
            "action": getattr(record, 'action', None),
            "extra": getattr(record, 'extra_data', None)
        }
        
        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}
        
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
            
        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  log_file: Optional[str] = None,
                  logger_name: str = "loan_servicing") -> logging.Logger:
    """
    Setup structured logging for the engine.
    
    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, anything else for plain text
        log_file: Optional file path; stdout when None
        logger_name: Name of the root logger for the package
        
    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    
    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    
    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))
    
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    
    return logger


def get_logger(name: str = "loan_servicing") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               loan_id: Optional[str] = None, actor: Optional[str] = None,
               action: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Log an action with structured data.
    
    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        loan_id: Loan the action applies to
        actor: User or system component performing the action
        action: Action being performed
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
    """
    fields = {}
    if loan_id:
        fields['loan_id'] = loan_id
    if actor:
        fields['actor'] = actor
    if action:
        fields['action'] = action
    if correlation_id:
        fields['correlation_id'] = correlation_id
    if extra:
        fields['extra_data'] = extra
    
    logger.log(getattr(logging, level.upper()), message, extra=fields)
