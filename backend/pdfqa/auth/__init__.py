from pdfqa.auth.access import AccessResolver, has_access, resolve
from pdfqa.auth.token import TokenPayload, get_current_user, verify_token

__all__ = [
    "AccessResolver", "has_access", "resolve",
    "TokenPayload", "get_current_user", "verify_token",
]
