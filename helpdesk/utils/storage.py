"""Helpers for media references used by automation steps."""
from pathlib import Path


def is_remote(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


def public_url(ref: str, prefix: str = "/storage") -> str:
    """
    Public-URL form of a media reference for persisted attachments.

    Remote URLs and absolute paths are kept; a bare storage-relative path
    such as `automation/images/a.png` becomes `/storage/automation/images/a.png`.
    """
    if ref.startswith("http") or ref.startswith("/"):
        return ref
    return prefix.rstrip("/") + "/" + ref.lstrip("/")


def local_path(ref: str, storage_root: str, prefix: str = "/storage") -> Path:
    """Filesystem path of a storage-relative (or public-prefixed) media reference."""
    relative = ref
    public_prefix = prefix.rstrip("/") + "/"
    if relative.startswith(public_prefix):
        relative = relative[len(public_prefix):]
    return Path(storage_root) / relative.lstrip("/")
