"""Public contract confirmation: sessions, OTP verification, audit trail."""

from .container import configure, configure_postgres, get_manager, get_verifier
from .service import ConfirmationSessionManager
from .verifier import OtpVerifier

__all__ = [
	"ConfirmationSessionManager",
	"OtpVerifier",
	"configure",
	"configure_postgres",
	"get_manager",
	"get_verifier",
]
