"""
Outbound request throttling for SIS providers.
"""

from .throttler import RequestThrottler, ThrottleConfig, ThrottleMetrics

__all__ = ['RequestThrottler', 'ThrottleConfig', 'ThrottleMetrics']
