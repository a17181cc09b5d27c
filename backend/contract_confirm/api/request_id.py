"""Request ID helper for endpoints.

Relies on the observability middleware binding the request id into the
logging context, with ``request.state`` as the secondary source.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from contract_confirm.obs import logging as obs_logging

REQUEST_ID_ATTR = "request_id"


def get_request_id(request: Optional[Request] = None, default: str = "unknown") -> str:
	"""Return the current request id if bound, else a default."""
	rid = obs_logging.current_request_id()
	if rid:
		return rid
	if request is not None:
		state_rid = getattr(request.state, REQUEST_ID_ATTR, None)
		if state_rid:
			return str(state_rid)
	return default
