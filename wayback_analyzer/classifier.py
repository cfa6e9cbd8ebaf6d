"""
Content classifier: maps an archived URL to a coarse content-type label
from its file extension, with a few filename heuristics.
"""
from __future__ import annotations

from urllib.parse import urlparse

CONTENT_TYPES = (
    "js", "json", "text", "html", "css", "images", "videos",
    "pdfs", "excel", "backup", "security", "config", "others",
)

BACKUP_EXTENSIONS = {
    "log", "bak", "backup", "swp", "lock", "sql", "db", "sqlite", "sqlite3",
    "zip", "tar", "gz", "tgz", "rar", "7z", "deb", "rpm", "iso", "img",
    "apk", "msi", "dmg", "tmp", "old",
}

# Checked in order, first match wins
_RULES: list[tuple[str, set[str]]] = [
    ("html", {"html", "htm"}),
    ("backup", BACKUP_EXTENSIONS),
    ("security", {"crt", "pem", "key", "pub", "asc", "htpasswd", "htaccess", "md5"}),
    ("config", {"conf", "config", "env", "inc", "ini", "bat", "sh", "yaml"}),
    ("excel", {"xls", "xlsx", "xlsm", "xlsb", "csv", "xml"}),
    ("js", {"js", "jsx", "ts", "tsx"}),
    ("json", {"json"}),
    ("text", {"txt", "md", "doc", "docx", "ppt", "scss", "less"}),
    ("images", {"jpg", "jpeg", "png", "gif", "svg", "webp", "ico", "bmp"}),
    ("videos", {"mp4", "webm", "ogg", "mov", "avi", "wmv"}),
    ("pdfs", {"pdf"}),
]


def _path_of(url: str) -> str:
    try:
        return urlparse(url).path
    except ValueError:
        return url.split("?", 1)[0].split("#", 1)[0]


def split_path(url: str) -> tuple[str, str, str]:
    """Return ``(path, filename, extension)``, lowercased."""
    path = _path_of(url.strip()).lower()
    filename = path.rsplit("/", 1)[-1]
    extension = filename.rsplit(".", 1)[-1] if "." in filename else ""
    return path, filename, extension


def classify(url: str) -> str:
    path, filename, extension = split_path(url)

    if extension == "css" or ".css" in filename or "/css/" in path:
        return "css"
    for label, extensions in _RULES:
        if extension in extensions:
            return label
        if label == "backup" and "backup" in filename:
            return label
    return "others"
