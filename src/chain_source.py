"""
Esplora chain-source preflight.
"""

import logging
from typing import Optional

import requests

from errors import ChainSourceError

logger = logging.getLogger(__name__)


def _session(proxy_url: str = "") -> requests.Session:
    session = requests.Session()
    if proxy_url:
        session.proxies = {"http": proxy_url, "https": proxy_url}
    return session


def check_chain_source(
    esplora_url: str,
    timeout: float = 10,
    proxy_url: str = "",
    session: Optional[requests.Session] = None,
) -> int:
    """Return the chain tip height reported by the Esplora server."""
    url = esplora_url.rstrip("/") + "/blocks/tip/height"
    own_session = session is None
    if own_session:
        session = _session(proxy_url)
    try:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
        height = int(resp.text.strip())
    except requests.RequestException as e:
        raise ChainSourceError(f"Esplora server {esplora_url} is not reachable: {e}") from e
    except ValueError as e:
        raise ChainSourceError(f"Esplora server {esplora_url} returned a bad tip height: {resp.text[:64]!r}") from e
    finally:
        if own_session:
            session.close()
    logger.info("esplora server %s at height %d", esplora_url, height)
    return height
