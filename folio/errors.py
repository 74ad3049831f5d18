from __future__ import annotations


class FolioError(Exception):
    pass


class ConfigError(FolioError):
    pass


class BuildError(FolioError):
    pass


class ContentError(FolioError):
    pass


class StoreError(FolioError):
    pass


class ApiError(FolioError):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message
