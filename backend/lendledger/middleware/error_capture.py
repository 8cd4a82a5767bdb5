"""FastAPI middleware that captures failed requests and logs them to the DB.

Every 5xx response (and every 4xx other than auth failures) is recorded in
the error_logs table together with the calling principal, when the bearer
token can be read.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import HTTPException, Request, Response
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from lendledger.auth_utils import decode_token
from lendledger.models.error_log import ErrorSeverity
from lendledger.services.error_logger import log_error_standalone

logger = logging.getLogger("lendledger.middleware")


def _principal_id(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    try:
        payload = decode_token(auth_header[7:])
    except JWTError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions, returns 500, and persists the error."""

    def _session_factory(self, request: Request):
        core = getattr(request.app.state, "core", None)
        return core.session_factory if core is not None else None

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        principal_id = _principal_id(request)
        ip_address = request.client.host if request.client else None
        session_factory = self._session_factory(request)

        try:
            response = await call_next(request)
        except HTTPException as exc:
            if exc.status_code < 500:
                raise
            response = None
            failure: Exception = exc
        except Exception as exc:
            response = None
            failure = exc

        elapsed_ms = round((time.time() - start) * 1000, 2)

        if response is None:
            severity = (
                ErrorSeverity.CRITICAL if "database" in str(failure).lower() else ErrorSeverity.ERROR
            )
            await log_error_standalone(
                failure,
                session_factory=session_factory,
                severity=severity,
                module="middleware.error_capture",
                request_method=request.method,
                request_path=str(request.url.path),
                status_code=500,
                response_time_ms=elapsed_ms,
                principal_id=principal_id,
                ip_address=ip_address,
            )
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

        if response.status_code >= 500:
            severity = ErrorSeverity.ERROR
        elif response.status_code >= 400 and response.status_code not in (401, 403):
            severity = ErrorSeverity.WARNING
        else:
            return response

        await log_error_standalone(
            Exception(f"HTTP {response.status_code} on {request.method} {request.url.path}"),
            session_factory=session_factory,
            severity=severity,
            module="middleware.error_capture",
            function_name="dispatch",
            request_method=request.method,
            request_path=str(request.url.path),
            status_code=response.status_code,
            response_time_ms=elapsed_ms,
            principal_id=principal_id,
            ip_address=ip_address,
        )
        return response
