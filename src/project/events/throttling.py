# events/throttling.py
import time
from functools import wraps

from django.core.cache import cache
from django.http import HttpResponse, JsonResponse


def client_ip(request) -> str:
    # X-Forwarded-For is client supplied; only the socket address is trusted
    return request.META.get("REMOTE_ADDR", "unknown")


def simple_rate_limit(key_prefix: str, limit: int, window_sec: int):
    """
    Fixed-window limiter keyed by client IP, applied to POST requests only.
    Over the limit answers 429 (JSON for JSON callers).
    """
    def deco(view):
        @wraps(view)
        def _wrapped(request, *args, **kwargs):
            if request.method != "POST":
                return view(request, *args, **kwargs)

            key = f"rl:{key_prefix}:{client_ip(request)}"
            now = int(time.monotonic())
            bucket = cache.get(key)
            if not bucket or now - bucket["start"] >= window_sec:
                bucket = {"start": now, "count": 0}
            bucket["count"] += 1
            cache.set(key, bucket, window_sec)

            if bucket["count"] > limit:
                message = "Too many registration attempts. Try again shortly."
                if request.content_type == "application/json":
                    return JsonResponse({"success": False, "code": "rate_limited", "message": message}, status=429)
                return HttpResponse(message, status=429)

            return view(request, *args, **kwargs)
        return _wrapped
    return deco
