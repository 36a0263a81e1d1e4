"""Client for the identity service mapping ledger addresses to member aliases"""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from config import settings_conf
from errors import NotFoundError, ServiceUnavailableError

logger = logging.getLogger(__name__)

class IdentityClient:
    """Identity service client"""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, timeout: float = 10):
        settings = settings_conf()
        self.host = host or settings['identity_service_host']
        self.port = port or settings['identity_service_port']
        self.url = f"http://{self.host}:{self.port}/v1"
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers['accept'] = 'application/json'

    def _get(self, path: str, auth_token: Optional[str] = None, item: str = 'identity') -> Dict[str, Any]:
        """GET a path of the identity API

        Raises:
            NotFoundError: The service has no such member
            ServiceUnavailableError: The service failed or could not be reached
        """
        headers = {'authorization': f"bearer {auth_token}"} if auth_token else {}
        try:
            response = self.session.get(f"{self.url}{path}", headers=headers, timeout=self.timeout)
            if response.status_code == 404:
                raise NotFoundError(item)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Identity service request {path} failed: {e}")
            raise ServiceUnavailableError('identity', str(e)) from e
        except ValueError as e:
            raise ServiceUnavailableError('identity', f"Invalid response format: {e}") from e

    async def get_member_by_self(self, auth_token: Optional[str] = None) -> Dict[str, Any]:
        """Address and alias of the member this service acts for"""
        return await asyncio.to_thread(self._get, '/self', auth_token)

    async def get_member_by_address(self, address: str, auth_token: Optional[str] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self._get,
            f"/members/{requests.utils.quote(address, safe='')}",
            auth_token,
            f"identity: {address}"
        )

    async def get_alias(self, address: str, auth_token: Optional[str] = None) -> str:
        member = await self.get_member_by_address(address, auth_token)
        return member['alias']
