"""
Off-chain content-addressed storage
===================================
IpfsBlobStore adds blobs through the IPFS HTTP API and reads them back
through an ordered list of gateways: local node first, then public
gateways. Each gateway gets its own timeout. The first gateway that answers
with a JSON object wins; an error page served with a 2xx status falls
through to the next gateway.
"""

import hashlib
import json
import logging

import requests

from config import DEFAULT_GATEWAYS
from errors import StorageUnreachable

logger = logging.getLogger(__name__)


def _is_json_object(body):
    try:
        return isinstance(json.loads(body), dict)
    except (TypeError, ValueError):
        return False


class IpfsBlobStore:
    def __init__(self, api_url="http://127.0.0.1:5001", gateways=DEFAULT_GATEWAYS,
                 timeout=8.0, session=None):
        self.api_url = api_url.rstrip("/")
        self.gateways = [g.rstrip("/") for g in gateways]
        self.timeout = timeout
        self.http = session or requests.Session()

    def put(self, data):
        """Add ``data`` to IPFS and return its CID."""
        url = f"{self.api_url}/api/v0/add"
        try:
            response = self.http.post(url, files={"file": data}, timeout=self.timeout)
            response.raise_for_status()
            cid = response.json()["Hash"]
        except (requests.exceptions.RequestException, ValueError, KeyError) as exc:
            raise StorageUnreachable(f"IPFS add failed: {exc}") from exc
        logger.info("Stored %d bytes as %s", len(data), cid)
        return cid

    def get(self, cid):
        """Fetch ``cid`` from the first gateway that answers."""
        for gateway in self.gateways:
            url = f"{gateway}/ipfs/{cid}"
            try:
                response = self.http.get(url, timeout=self.timeout)
            except requests.exceptions.RequestException as exc:
                logger.warning("Gateway failed: %s (%s)", url, exc)
                continue
            if not response.ok:
                logger.warning("Gateway failed: %s (HTTP %s)", url, response.status_code)
                continue
            if not _is_json_object(response.content):
                logger.warning("Gateway failed: %s (body is not a JSON object)", url)
                continue
            return response.content

        raise StorageUnreachable(f"Failed to fetch CID {cid} from all gateways")


class MemoryBlobStore:
    """In-process store keyed by SHA-256, for tests and offline runs."""

    def __init__(self):
        self.blobs = {}

    def put(self, data):
        cid = hashlib.sha256(data).hexdigest()
        self.blobs[cid] = bytes(data)
        return cid

    def get(self, cid):
        try:
            return self.blobs[cid]
        except KeyError:
            raise StorageUnreachable(f"Failed to fetch CID {cid}") from None
