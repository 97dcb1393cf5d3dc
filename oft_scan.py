# oft_scan.py
# Looks up the delivery status of a sent message on LayerZero Scan.

import logging
from typing import Optional

import requests

from oft_errors import TransportFailure


def fetch_message_status(tx_hash: str, base_url: str, timeout: float = 10) -> Optional[str]:
    """
    Queries `{base_url}/messages/tx/{tx_hash}` for the message created by a send.

    Returns:
        The status name of the first message (e.g. "INFLIGHT", "DELIVERED"),
        or None if the API has not indexed the transaction yet.

    Raises:
        TransportFailure: if the request fails or the response is not the
                          expected JSON shape.
    """
    url = f"{base_url.rstrip('/')}/messages/tx/{tx_hash}"
    try:
        response = requests.get(url, timeout=timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        payload = response.json()
    except requests.exceptions.RequestException as e:
        raise TransportFailure(f"LayerZero Scan lookup failed for {tx_hash}: {e}") from e
    except ValueError as e:
        raise TransportFailure(f"LayerZero Scan returned invalid JSON for {tx_hash}: {e}") from e

    if not isinstance(payload, dict):
        raise TransportFailure(f"LayerZero Scan returned an unexpected response for {tx_hash}: {payload!r}")
    messages = payload.get("data") or []
    if not isinstance(messages, list):
        raise TransportFailure(f"LayerZero Scan returned an unexpected 'data' for {tx_hash}: {messages!r}")
    if not messages:
        return None
    if not isinstance(messages[0], dict):
        raise TransportFailure(f"LayerZero Scan returned an unexpected message for {tx_hash}: {messages[0]!r}")
    status = messages[0].get("status") or {}
    if isinstance(status, dict):
        return status.get("name")
    return str(status)


def log_message_status(tx_hash: str, base_url: str, timeout: float = 10) -> Optional[str]:
    """Logs the message status; lookup failures are reported, never raised."""
    try:
        status = fetch_message_status(tx_hash, base_url, timeout)
    except TransportFailure as e:
        logging.warning(str(e))
        return None

    if status is None:
        logging.info(f"LayerZero Scan has no record of {tx_hash} yet.")
    else:
        logging.info(f"LayerZero Scan status for {tx_hash}: {status}")
    return status
