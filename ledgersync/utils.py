from functools import wraps
import logging
import traceback

from fastapi import HTTPException
from requests.exceptions import RequestException

from .services.xero.client import XeroAuthError, XeroNotConnectedError
from .sync.conflicts import ConflictNotFoundError

logger = logging.getLogger(__name__)


def handle_errors(func):
    """
    Decorator to handle common exceptions in API endpoints.

    Wraps an endpoint to map exceptions onto HTTP responses with a
    ``{"detail": ...}`` body. ``HTTPException`` raised by the endpoint itself
    passes through untouched.

    Raises:
        HTTPException: with status codes
                       - 400 for invalid requests (``ValueError``, ``TypeError``)
                       - 401 when Xero is not connected or the token cannot be refreshed
                       - 404 for unknown conflicts
                       - 503 for network errors
                       - 500 for unexpected errors

    Example:
        >>> @app.get("/example")
        >>> @handle_errors
        >>> def example_endpoint():
        >>>     # Your endpoint logic here
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)

        except HTTPException:
            raise

        except ConflictNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

        except (XeroNotConnectedError, XeroAuthError) as e:
            logger.warning(f"Xero authorization error: {e}")
            raise HTTPException(status_code=401, detail=str(e))

        except (ValueError, TypeError) as e:
            # Client-side errors (400-level)
            logger.error(f"Client-side error: {e}")
            raise HTTPException(status_code=400, detail=f"Invalid request: {e}")

        except RequestException as e:
            tb = traceback.format_exc()
            logger.error(f"Network error: {e}\nTraceback:\n{tb}")
            raise HTTPException(status_code=503, detail="Service unavailable: network error while connecting to Xero.")

        except Exception as e:
            tb = traceback.format_exc()
            logger.error(f"Unexpected server error: {e}\nTraceback:\n{tb}")
            raise HTTPException(status_code=500, detail=f"An unexpected server error occurred: {e}")
    return wrapper
