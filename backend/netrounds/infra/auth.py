"""Identity helpers for FastAPI endpoints.

This service never authenticates anyone itself. The gateway in front of it
verifies credentials and forwards the resulting identity as headers:

- ``X-User-Id`` / ``X-User-Roles`` for organizers and admins
- ``X-Participant-Token`` for participants (magic-link token)

Headers are only honoured when ``settings.identity_headers_trusted()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status

from netrounds.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles

	def is_admin(self) -> bool:
		return self.has_role("admin")


def _split_roles(raw: Optional[str]) -> Tuple[str, ...]:
	if not raw:
		return ()
	return tuple(part.strip() for part in raw.split(",") if part.strip())


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
) -> AuthenticatedUser:
	if not settings.identity_headers_trusted():
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="untrusted_identity")
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_identity")
	return AuthenticatedUser(id=user_id, roles=_split_roles(x_user_roles))


def require_roles(*required: Iterable[str]):
	"""Return a dependency that enforces the presence of any of the given roles.

	Usage:
		@router.get("/organizer/sessions", dependencies=[Depends(require_roles("organizer"))])
	"""
	required_set = {str(r).strip() for r in required if str(r).strip()}

	async def _dep(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
		if not required_set:
			return user
		if any(user.has_role(r) for r in required_set) or user.is_admin():
			return user
		raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")

	return _dep


async def get_participant_token(
	x_participant_token: Optional[str] = Header(default=None, alias="X-Participant-Token"),
) -> str:
	if not settings.identity_headers_trusted():
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="untrusted_identity")
	token = (x_participant_token or "").strip()
	if not token:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_participant_token")
	return token
