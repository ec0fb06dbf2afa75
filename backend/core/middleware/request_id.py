import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from backend.core.logging import request_id_ctx_var, org_id_ctx_var, latency_bucket_ms


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind request_id and calling organization to the request; log completion."""

    def __init__(self, app, header_name: str = "x-request-id", org_header_name: str = "x-organization-id"):
        super().__init__(app)
        self.header_name = header_name
        self.org_header_name = org_header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        # Auth layers upstream may already have resolved the organization
        org_id = getattr(request.state, "organization_id", None) or request.headers.get(self.org_header_name)

        rid_token = request_id_ctx_var.set(rid)
        org_token = org_id_ctx_var.set(org_id)
        try:
            start = time.perf_counter()
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000

            response.headers[self.header_name] = rid

            logging.getLogger("suite").info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "org_id": org_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status": getattr(response, "status_code", None),
                    "latency_bucket": latency_bucket_ms(duration_ms),
                },
            )
            return response
        finally:
            org_id_ctx_var.reset(org_token)
            request_id_ctx_var.reset(rid_token)
