"""
QR code login tokens.

Tokens are bearer credentials with an absolute expiry and a cap on how many
times they can be presented.
"""

import io
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional
from urllib.parse import urlencode

import qrcode

from .errors import ValidationError


@dataclass
class IssuedToken:
    token: str
    login_url: str
    expires_at: int
    expires_in_hours: int
    description: str


@dataclass
class QRToken:
    token: str
    description: str
    created_at: int
    expires_at: int
    last_used_at: Optional[int]
    used_count: int


class QRTokenService:
    """Issues and validates QR login tokens stored in the qr_tokens table."""

    DEFAULT_DESCRIPTION = "Activity Leader QR Code"

    def __init__(
        self,
        db_manager: Any,
        config: Any,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db_manager
        self.config = config
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    def login_url(self, token: str) -> str:
        base_url = str(self.config.get("qr", "base_url")).rstrip("/")
        return f"{base_url}/qr-login?{urlencode({'token': token})}"

    async def issue(
        self,
        expires_in_hours: int,
        description: str = "",
    ) -> IssuedToken:
        """
        Create a new token.

        @param expires_in_hours: Lifetime in whole hours (configured range, 1-168 by default)
        @param description: Free text shown in the admin list
        @return: The token with its login URL and expiry
        @raise ValidationError: If the lifetime is outside the allowed range
        """
        min_hours = self.config.get("qr", "min_hours")
        max_hours = self.config.get("qr", "max_hours")

        if (
            not isinstance(expires_in_hours, int)
            or isinstance(expires_in_hours, bool)
            or not min_hours <= expires_in_hours <= max_hours
        ):
            raise ValidationError(
                f"Expiration time must be between {min_hours} and {max_hours} hours"
            )

        description = (description or "").strip() or self.DEFAULT_DESCRIPTION
        token = secrets.token_hex(32)
        created_at = self._now()
        expires_at = created_at + expires_in_hours * 3600

        await self.db.insert_qr_token(token, description, created_at, expires_at)
        print(f"Issued QR token {token[:8]}... expiring in {expires_in_hours}h")

        return IssuedToken(
            token=token,
            login_url=self.login_url(token),
            expires_at=expires_at,
            expires_in_hours=expires_in_hours,
            description=description,
        )

    async def validate(self, token: Optional[str], max_uses: Optional[int] = None) -> bool:
        """
        Present a token once.

        Fails closed for empty, unknown, expired or exhausted tokens. On
        success the use is recorded before returning.
        """
        if not token or not isinstance(token, str):
            return False

        if max_uses is None:
            max_uses = int(self.config.get("qr", "max_uses"))

        return await self.db.consume_qr_token(token, self._now(), max_uses)

    async def cleanup_expired(self) -> int:
        """
        @return: Number of expired tokens removed
        """
        removed = await self.db.delete_expired_qr_tokens(self._now())
        if removed:
            print(f"Removed {removed} expired QR token(s)")
        return removed

    async def list_active(self) -> List[QRToken]:
        rows = await self.db.list_active_qr_tokens(self._now())
        return [QRToken(**row) for row in rows]

    async def revoke(self, token: str) -> bool:
        return await self.db.delete_qr_token(token)

    @staticmethod
    def qr_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
        """
        Render data (normally a login URL) as a PNG QR code.

        @return: PNG image bytes
        """
        qr = qrcode.QRCode(version=None, box_size=box_size, border=border)
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()
