"""HTTP helpers shared by event sources."""
import logging
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_DELAY = 1  # seconds


def get_with_retry(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: int = 30,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY
) -> requests.Response:
    """
    GET a URL, retrying failed requests with exponential backoff.

    Args:
        url: URL to fetch
        params: Optional query parameters
        timeout: HTTP request timeout in seconds (default: 30)
        max_retries: Number of attempts before giving up (default: 3)
        base_delay: Delay before the first retry in seconds (default: 1)

    Returns:
        Successful response

    Raises:
        requests.RequestException: If all retry attempts fail
    """
    for attempt in range(max_retries):
        try:
            logger.info(f"GET {url} (attempt {attempt + 1}/{max_retries})")
            response = requests.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            return response

        except requests.RequestException as e:
            if attempt < max_retries - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {delay} seconds..."
                )
                time.sleep(delay)
            else:
                logger.error(
                    f"All {max_retries} retry attempts failed. Last error: {e}"
                )
                raise
