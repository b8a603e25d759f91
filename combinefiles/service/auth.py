from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import os
import re

from fastapi import HTTPException, Depends, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

security_scheme = HTTPBearer(auto_error=False)

_OUTPUT_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass
class SecurityConfig:
    # Absolute, resolved roots only.
    allowed_roots: List[Path] = field(default_factory=list)
    token: Optional[str] = None

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    def reset(self) -> None:
        self.allowed_roots = []
        self.token = None

    def add_allowed_root(self, path: Path) -> None:
        s = str(path)
        if not s.strip():
            raise ValueError("Invalid root (empty)")
        if "\x00" in s:
            raise ValueError("Invalid root (NUL byte)")
        root = path.expanduser().resolve()
        if root not in self.allowed_roots:
            self.allowed_roots.append(root)

    def validate_path(self, path: Path) -> Path:
        """
        Returns the resolved path if it lies inside an allowed root.
        Checked twice: on the normalized string, then after resolve() so
        symlinks cannot escape.
        """
        raw = str(path)
        if not raw.strip():
            raise HTTPException(status_code=400, detail="Invalid path (empty)")
        if "\0" in raw:
            raise HTTPException(status_code=400, detail="Invalid path (NUL byte)")
        if not self.allowed_roots:
            raise HTTPException(status_code=403, detail="No allowed roots configured")

        normalized = os.path.normpath(os.path.expanduser(raw))
        if not os.path.isabs(normalized):
            raise HTTPException(status_code=400, detail="Invalid path (not absolute)")

        def _inside(candidate: str) -> bool:
            for root in self.allowed_roots:
                try:
                    if os.path.commonpath([str(root), candidate]) == str(root):
                        return True
                except ValueError:
                    continue
            return False

        if not _inside(normalized):
            raise HTTPException(status_code=403, detail="Access denied: path is outside the allowed roots")

        resolved = Path(normalized).resolve()
        if not _inside(str(resolved)):
            raise HTTPException(status_code=403, detail="Access denied: path resolves outside the allowed roots")
        return resolved


_security_config = SecurityConfig()


def get_security_config() -> SecurityConfig:
    return _security_config


def verify_token(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    token: Optional[str] = Query(None)
):
    config = get_security_config()
    if not config.token:
        return

    if creds and creds.credentials == config.token:
        return

    if token and token == config.token:
        return

    raise HTTPException(status_code=401, detail="Missing or invalid authentication token")


def resolve_source_dir(root: Path, requested: Optional[str]) -> Path:
    """Relative sources are taken from ``root``; the result must be an existing allowed directory."""
    if not requested or not requested.strip():
        candidate = root
    elif os.path.isabs(requested):
        candidate = Path(requested)
    else:
        candidate = root / requested

    resolved = get_security_config().validate_path(candidate)
    if not resolved.is_dir():
        raise HTTPException(status_code=400, detail="Source is not an existing directory")
    return resolved


def validate_output_name(name: str) -> str:
    n = (name or "").strip()
    if not n or n in (".", "..") or not _OUTPUT_NAME_RE.match(n):
        raise HTTPException(status_code=400, detail="Invalid output name (plain file name expected)")
    return n
