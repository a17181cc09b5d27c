"""ASGI middleware for metrics and request-scoped logging."""

from __future__ import annotations

import time
from typing import Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from contract_confirm.api.request_id import REQUEST_ID_ATTR
from contract_confirm.obs import logging as obs_logging
from contract_confirm.obs import metrics
from contract_confirm.settings import settings


_CONFIRM_PREFIX = "/contracts/confirm/"


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	if route and getattr(route, "path", None):
		return route.path  # type: ignore[return-value]
	path = request.url.path
	if path.startswith(_CONFIRM_PREFIX):
		_, sep, tail = path[len(_CONFIRM_PREFIX):].partition("/")
		return f"{_CONFIRM_PREFIX}{{token}}{sep}{tail}"
	return path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	"""Instrument requests with metrics and structured logs."""

	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("contract_confirm.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not settings.obs_enabled or not self._enabled:
			return await call_next(request)

		existing_request_id = getattr(request.state, REQUEST_ID_ATTR, None)
		request_id = existing_request_id or request.headers.get("X-Request-Id") or str(uuid4())
		if not existing_request_id:
			setattr(request.state, REQUEST_ID_ATTR, request_id)
		route_template = _route_template(request)
		client = request.client
		client_ip = client.host if client else None
		tokens = obs_logging.bind_context(
			request_id=request_id,
			route=route_template,
			client_ip=client_ip,
		)
		start = time.perf_counter()
		elapsed_seconds = 0.0
		status_code = 500
		response: Optional[Response] = None
		exc: Exception | None = None
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception as err:
			self._logger.exception(
				"http_request_error",
				extra={"method": request.method, "path": _route_template(request)},
			)
			exc = err
		finally:
			elapsed_seconds = time.perf_counter() - start
			metrics.observe_request(_route_template(request), request.method, status_code, elapsed_seconds)

		if response is None:
			response = Response(status_code=status_code)
		if "X-Request-Id" not in response.headers:
			response.headers["X-Request-Id"] = request_id

		extra: dict[str, object] = {
			"status": status_code,
			"method": request.method,
			"latency_ms": round(elapsed_seconds * 1000, 3),
			"route": _route_template(request),
		}
		self._logger.info("http_request", extra=extra)
		obs_logging.reset_context(tokens)
		obs_logging.clear_context()
		if exc is not None:
			raise exc
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
