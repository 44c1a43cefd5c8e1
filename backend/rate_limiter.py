"""
Rate limiting for API endpoints
Sliding window per client IP and limit type, kept in process memory
"""
import time
from collections import defaultdict, deque
from threading import Lock
from functools import wraps
from flask import request, jsonify, current_app, make_response
import logging

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'launchpad.rate_limiter'


class RateLimiter:
    """Simple in-memory rate limiter"""

    def __init__(self, settings=None, clock=time.monotonic):
        self.clock = clock
        self.requests = defaultdict(deque)
        self.lock = Lock()
        self.limits = {
            'deploy': {'max_requests': settings.deploy_rate_limit if settings else 30, 'window': 3600},
            'api': {'max_requests': settings.api_rate_limit if settings else 300, 'window': 60},
        }

    def _limits(self, limit_type):
        return self.limits.get(limit_type, self.limits['api'])

    def _trim(self, key, window, now):
        hits = self.requests[key]
        while hits and now - hits[0] >= window:
            hits.popleft()
        return hits

    def is_allowed(self, key, limit_type='api'):
        """Returns (is_allowed, remaining_requests)"""
        limits = self._limits(limit_type)
        with self.lock:
            now = self.clock()
            hits = self._trim(key, limits['window'], now)
            if len(hits) >= limits['max_requests']:
                return False, 0
            hits.append(now)
            return True, limits['max_requests'] - len(hits)

    def get_remaining(self, key, limit_type='api'):
        limits = self._limits(limit_type)
        with self.lock:
            hits = self._trim(key, limits['window'], self.clock())
            return limits['max_requests'] - len(hits)


def rate_limit(limit_type='api'):
    """Decorator for rate limiting; a no-op when the app has no limiter"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            limiter = current_app.extensions.get(EXTENSION_KEY)
            if limiter is None:
                return f(*args, **kwargs)

            client_ip = request.remote_addr or 'unknown'
            allowed, remaining = limiter.is_allowed(f"{limit_type}:{client_ip}", limit_type)
            max_requests = limiter._limits(limit_type)['max_requests']

            if not allowed:
                logger.warning(f"⚠️ Rate limit exceeded for {client_ip} ({limit_type})")
                response = jsonify({
                    'error': 'Rate limit exceeded',
                    'message': 'Too many requests. Please try again later.',
                    'limit_type': limit_type
                })
                response.status_code = 429
            else:
                response = make_response(f(*args, **kwargs))

            response.headers['X-RateLimit-Limit'] = str(max_requests)
            response.headers['X-RateLimit-Remaining'] = str(remaining)
            return response

        return decorated_function
    return decorator
