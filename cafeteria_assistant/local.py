from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import httpx

from .config import LOCAL_MODEL_PREFERENCE, LOCAL_PROVIDER_NAME
from .utils import DebugLog

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_S = 5.0
DEFAULT_LOCAL_MODEL = "llama3"


def list_local_models(
    base_url: str,
    *,
    http_client: Optional[httpx.Client] = None,
    timeout_s: float = PROBE_TIMEOUT_S,
) -> List[str]:
    """
    Installed model names from `GET {base_url}/api/tags`.
    Raises httpx errors or ValueError when the daemon is unreachable or the
    body is not the expected shape.
    """
    url = f"{base_url.rstrip('/')}/api/tags"
    timeout = httpx.Timeout(timeout_s)
    if http_client is not None:
        resp = http_client.get(url, timeout=timeout)
    else:
        with httpx.Client() as client:
            resp = client.get(url, timeout=timeout)
    resp.raise_for_status()

    data = resp.json()
    models = data.get("models") if isinstance(data, dict) else None
    if not isinstance(models, list):
        raise ValueError("unexpected /api/tags body")
    names: List[str] = []
    for m in models:
        name = m.get("name") if isinstance(m, dict) else None
        if isinstance(name, str) and name:
            names.append(name)
    return names


def select_local_model(installed: Sequence[str], preference: Sequence[str] = LOCAL_MODEL_PREFERENCE) -> str:
    """
    First installed model whose name contains a preferred family (in
    preference order), else the first installed model, else the default.
    """
    for family in preference:
        for name in installed:
            if family in name.lower():
                return name
    if installed:
        return installed[0]
    return DEFAULT_LOCAL_MODEL


def probe_local_provider(
    base_url: str,
    *,
    preference: Sequence[str] = LOCAL_MODEL_PREFERENCE,
    http_client: Optional[httpx.Client] = None,
    log: Optional[DebugLog] = None,
) -> Optional[str]:
    """
    Model to use for the local daemon, or None when the daemon cannot be
    reached (the local path is then unavailable for this request).
    """
    try:
        installed = list_local_models(base_url, http_client=http_client)
    except (httpx.HTTPError, ValueError) as e:
        logger.info("Local model daemon unavailable at %s: %s", base_url, e)
        if log is not None:
            log.add(f"{LOCAL_PROVIDER_NAME}: probe failed ({e.__class__.__name__})")
        return None

    model = select_local_model(installed, preference)
    if log is not None:
        log.add(f"{LOCAL_PROVIDER_NAME}: {len(installed)} model(s) installed, using {model}")
    return model
