"""
CORS handling for vault endpoints.

Every OPTIONS request is answered immediately with 200, an empty body and
the permissive CORS headers; every other response gets the same headers.
Preflight short-circuits before authentication and rate limiting.
"""

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-api-key",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


class CORSMiddleware(BaseHTTPMiddleware):
    """Adds CORS headers and answers preflight requests."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)

        response = await call_next(request)
        for header, value in CORS_HEADERS.items():
            response.headers.setdefault(header, value)
        return response
