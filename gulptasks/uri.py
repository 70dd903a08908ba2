"""URL building for project files served locally."""

from __future__ import annotations

import posixpath
from urllib.parse import urlsplit, urlunsplit


def build_uri(appdir: str, filepath: str, port: int | None = None, https: bool = False) -> str:
    """Join a project file onto the app URL, optionally on a specific port.

    appdir is host plus optional path, e.g. "localhost/project".
    """
    scheme = "https" if https else "http"
    parsed = urlsplit(f"{scheme}://{appdir or 'localhost'}")
    host = parsed.hostname or "localhost"
    netloc = f"{host}:{port}" if port else parsed.netloc or host
    path = posixpath.normpath(posixpath.join("/", parsed.path.lstrip("/"), filepath.lstrip("/")))
    return urlunsplit((scheme, netloc, path, "", ""))
