"""Configuration module for the ContaFlix automation worker."""

from contaflix.config.holidays import (
    is_business_day,
    last_business_day_of_month,
    next_business_day,
    previous_business_day,
)
from contaflix.config.logging import bind_command_context, configure_logging, get_logger
from contaflix.config.settings import FlatSettings, get_settings

__all__ = [
    "FlatSettings",
    "get_settings",
    "bind_command_context",
    "configure_logging",
    "get_logger",
    "is_business_day",
    "last_business_day_of_month",
    "next_business_day",
    "previous_business_day",
]
