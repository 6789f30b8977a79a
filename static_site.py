import logging
import os
from pathlib import Path
from typing import Dict, Optional

from fastapi.responses import FileResponse, PlainTextResponse, Response

logger = logging.getLogger(__name__)

INDEX_PATH = "/index.html"

CONTENT_TYPES: Dict[str, str] = {
    "html": "text/html; charset=utf-8",
    "js": "application/javascript",
    "css": "text/css",
    "json": "application/json",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "ico": "image/x-icon",
}

# Relaxed CSP so the page can load cross-origin images and frames
HTML_CONTENT_SECURITY_POLICY = (
    "default-src 'self' 'unsafe-inline' 'unsafe-eval' data: blob: *; "
    "img-src 'self' data: blob: https: http: *; "
    "frame-src 'self' https: http: *; "
    "connect-src 'self' https: http: *;"
)


def get_content_type(file_path: str) -> str:
    extension = file_path.rsplit(".", 1)[-1].lower() if "." in file_path else ""
    return CONTENT_TYPES.get(extension, "application/octet-stream")


class StaticSite:
    """Fixed map of the built front-end's files, captured at startup."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.files: Dict[str, Path] = self._scan()
        logger.info(f"Static site loaded from {self.directory} ({len(self.files)} files)")

    def _scan(self) -> Dict[str, Path]:
        files: Dict[str, Path] = {}
        if not self.directory.is_dir():
            logger.warning(f"Static directory {self.directory} does not exist")
            return files
        for root, _, names in os.walk(self.directory):
            for name in names:
                full_path = Path(root) / name
                url_path = "/" + full_path.relative_to(self.directory).as_posix()
                files[url_path] = full_path
        return files

    def headers_for(self, url_path: str) -> Dict[str, str]:
        content_type = get_content_type(url_path)
        headers = {
            "Content-Type": content_type,
            "Cache-Control": "no-cache" if url_path == INDEX_PATH else "public, max-age=31536000",
        }
        if content_type.startswith("text/html"):
            headers["Content-Security-Policy"] = HTML_CONTENT_SECURITY_POLICY
        return headers

    def lookup(self, pathname: str) -> Optional[Response]:
        url_path = INDEX_PATH if pathname in ("", "/") else pathname
        if not url_path.startswith("/"):
            url_path = "/" + url_path
        file_path = self.files.get(url_path)
        if file_path is None:
            return None
        headers = self.headers_for(url_path)
        return FileResponse(file_path, media_type=headers.pop("Content-Type"), headers=headers)

    def serve(self, pathname: str) -> Response:
        """Serve `pathname`, falling back to index.html for client-side routes."""
        response = self.lookup(pathname)
        if response is None:
            response = self.lookup(INDEX_PATH)
        return response or PlainTextResponse("Not Found", status_code=404)
