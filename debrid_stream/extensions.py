"""File extension helpers for video and archive detection."""

VIDEO_EXTENSIONS = frozenset([
    "3g2", "3gp", "avi", "flv", "mkv", "mk3d", "mov", "mp2", "mp4", "m4v",
    "mpe", "mpeg", "mpg", "mpv", "webm", "wmv", "ogm", "divx", "ts", "m2ts",
])

ARCHIVE_EXTENSIONS = frozenset(["rar", "zip", "7z", "tar", "gz", "tgz"])


def _extension(filename: str) -> str:
    if not filename:
        return ""
    name = filename.split("?", 1)[0].rstrip("/")
    if "." not in name.rsplit("/", 1)[-1]:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def is_video(filename: str) -> bool:
    return _extension(filename) in VIDEO_EXTENSIONS


def is_archive(filename: str) -> bool:
    return _extension(filename) in ARCHIVE_EXTENSIONS
