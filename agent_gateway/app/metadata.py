"""
Project metadata route.

GET /api/metadata returns the [meta] table of the project's TOML file
(deepgram.toml by default) so the frontend can show what it is talking to.
"""

import logging
import tomllib
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request, status

from .models import ErrorResponse

logger = logging.getLogger(__name__)

metadata_router = APIRouter(prefix="/api", tags=["metadata"])


def _metadata_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "INTERNAL_SERVER_ERROR", "message": message},
    )


def load_metadata(path: str) -> Dict[str, Any]:
    """
    Read the [meta] table from a TOML file.

    Raises:
        HTTPException: 500 if the file is missing, unparseable, or has no [meta]
    """
    try:
        with open(path, "rb") as f:
            document = tomllib.load(f)
    except OSError as e:
        logger.error(f"Error reading {path}: {type(e).__name__}")
        raise _metadata_error(f"Failed to read metadata from {path}") from e
    except tomllib.TOMLDecodeError as e:
        logger.error(f"Error parsing {path}: {e}")
        raise _metadata_error(f"Failed to parse {path}") from e

    meta = document.get("meta")
    if not isinstance(meta, dict):
        raise _metadata_error(f"Missing [meta] section in {path}")
    return meta


@metadata_router.get("/metadata", responses={500: {"model": ErrorResponse}})
def get_metadata(request: Request) -> Dict[str, Any]:
    """Return project metadata from the configured TOML file."""
    return load_metadata(request.app.state.settings.METADATA_FILE)
