"""music_dl_api: background job API for the apple-music-dl downloader."""

__version__ = "1.0.0"
