"""
Domain errors. Raised by services, rendered by the app-level exception handler
as {"success": false, "error": "..."} with the error's status code.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


class ReposeError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(ReposeError):
    status_code = 404

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class Conflict(ReposeError):
    status_code = 409


class FavoriteLimitExceeded(Conflict):
    pass


class RankTaken(Conflict):
    pass


class InvalidRequest(ReposeError):
    status_code = 400


class NothingToGenerate(InvalidRequest):
    pass


class NothingToExport(InvalidRequest):
    pass


class UnknownView(InvalidRequest):
    pass


class FeatureDisabled(ReposeError):
    status_code = 503


async def repose_error_handler(request: Request, exc: ReposeError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )
