"""Download job command construction."""
from __future__ import annotations

import shlex
from typing import List

from .models import AudioFormat, DownloadRequest

DEFAULT_TIMEOUT_SECONDS = 3600

_FORMAT_FLAGS = {
    AudioFormat.atmos: "--atmos",
    AudioFormat.aac: "--aac",
}

_FORMAT_LABELS = {
    AudioFormat.alac: "ALAC (default)",
    AudioFormat.atmos: "Dolby Atmos",
    AudioFormat.aac: "AAC",
}


def build_command(request: DownloadRequest) -> List[str]:
    """Return the downloader argument vector for *request* (URL last)."""
    args: List[str] = []
    flag = _FORMAT_FLAGS.get(request.format)
    if flag:
        args.append(flag)
    if request.song:
        args.append("--song")
    if request.debug:
        args.append("--debug")
    args.append(request.url)
    return args


def describe_request(request: DownloadRequest) -> List[str]:
    """Human-readable lines recording the resolved job configuration."""
    lines = [f"Format: {_FORMAT_LABELS[request.format]}"]
    if request.song:
        lines.append("Mode: Single song")
    if request.debug:
        lines.append("Debug mode enabled")
    return lines


def effective_timeout(request: DownloadRequest, default: int = DEFAULT_TIMEOUT_SECONDS) -> int:
    """Seconds the job may run; zero or unset falls back to *default*."""
    return request.timeout if request.timeout and request.timeout > 0 else default


def format_command(executable: str, args: List[str]) -> str:
    return shlex.join([executable, *args])
