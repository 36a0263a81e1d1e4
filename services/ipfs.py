"""Client for the IPFS HTTP API used as the attachment blob store"""
import asyncio
import logging
from typing import Optional

import requests

from config import settings_conf
from errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

class IpfsClient:
    """IPFS HTTP API client"""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, timeout: float = 30):
        settings = settings_conf()
        self.host = host or settings['ipfs_host']
        self.port = port or settings['ipfs_port']
        self.url = f"http://{self.host}:{self.port}/api/v0"
        self.timeout = timeout
        self.session = requests.Session()

    def _post(self, endpoint: str, **kwargs) -> requests.Response:
        try:
            response = self.session.post(f"{self.url}/{endpoint}", timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            logger.error(f"IPFS {endpoint} failed: {e}")
            raise ServiceUnavailableError('ipfs', str(e)) from e

    def _add(self, filename: str, content: bytes) -> str:
        response = self._post('add', params={'cid-version': 0}, files={'file': (filename, content)})
        try:
            return response.json()['Hash']
        except (KeyError, ValueError) as e:
            raise ServiceUnavailableError('ipfs', f"Invalid response format: {e}") from e

    async def add_file(self, filename: str, content: bytes) -> str:
        """Store content and return its content hash"""
        ipfs_hash = await asyncio.to_thread(self._add, filename, content)
        logger.debug(f"Added {filename} to IPFS as {ipfs_hash}")
        return ipfs_hash

    async def get_file(self, ipfs_hash: str) -> bytes:
        response = await asyncio.to_thread(self._post, 'cat', params={'arg': ipfs_hash})
        return response.content
