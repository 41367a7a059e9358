"""Shareable credential artifacts: QR code rendering and per-identity PNG storage."""

from __future__ import annotations

import io
import logging
import os
import re
from pathlib import Path

import qrcode
from qrcode.image.pure import PyPNGImage

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._@+-]+$")


def is_safe_name(identity: str) -> bool:
    """True if *identity* can be used verbatim as an artifact file stem."""
    return bool(_SAFE_NAME.match(identity)) and identity not in (".", "..")


class QRCodeRenderer:
    """Renders a login URL carrying the plaintext secret as a QR code PNG."""

    def __init__(self, public_base_url: str) -> None:
        self._base_url = public_base_url.rstrip("/")

    def login_url(self, identity: str, secret: str) -> str:
        return f"{self._base_url}/{identity}?password={secret}"

    def render(self, identity: str, secret: str) -> bytes:
        image = qrcode.make(
            self.login_url(identity, secret),
            image_factory=PyPNGImage,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
        )
        buf = io.BytesIO()
        image.save(buf)
        return buf.getvalue()


class ArtifactStore:
    """One ``<identity>.png`` blob per identity under a directory.

    Writes go through a temp file and ``os.replace`` so a reader never sees
    a half-written image.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def ref_for(self, identity: str) -> str:
        """Artifact reference handed to callers (the file name)."""
        return f"{identity}.png"

    def save(self, identity: str, data: bytes) -> str:
        path = self._path_for(identity)
        if path is None:
            raise ValueError(f"Identity {identity!r} cannot name an artifact.")
        tmp = path.with_suffix(".png.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        return self.ref_for(identity)

    def load(self, identity: str) -> bytes | None:
        path = self._path_for(identity)
        if path is None or not path.is_file():
            return None
        return path.read_bytes()

    def delete(self, identity: str) -> bool:
        """Remove the artifact. Returns False if there was nothing to remove."""
        path = self._path_for(identity)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _path_for(self, identity: str) -> Path | None:
        if not is_safe_name(identity):
            return None
        return self._dir / self.ref_for(identity)
