"""Attachment store: file content in IPFS, metadata in the attachment table"""
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from database import Store
from errors import NotFoundError
from services import IpfsClient

logger = logging.getLogger(__name__)

class AttachmentManager:
    """Manages attachments referenced by demands, comments and cancellations"""

    def __init__(self, store: Optional[Store] = None, ipfs: Optional[IpfsClient] = None):
        self.store = store or Store()
        self.ipfs = ipfs or IpfsClient()

    async def create(self, filename: str, content: bytes) -> Dict[str, Any]:
        """Upload content and record the attachment row

        Raises:
            ServiceUnavailableError: IPFS could not store the file
        """
        ipfs_hash = await self.ipfs.add_file(filename, content)
        attachment = await self.store.insert_attachment(filename, len(content), ipfs_hash)
        logger.info(f"Created attachment {attachment['id']} ({filename}, {len(content)} bytes)")
        return attachment

    async def get_metadata(self, attachment_id: UUID) -> Dict[str, Any]:
        attachment = await self.store.get_attachment(attachment_id)
        if not attachment:
            raise NotFoundError('attachment')
        return attachment

    async def get(self, attachment_id: UUID) -> Dict[str, Any]:
        """Attachment row together with its content

        Raises:
            NotFoundError: No such attachment
            ServiceUnavailableError: IPFS could not return the content
        """
        attachment = await self.get_metadata(attachment_id)
        content = await self.ipfs.get_file(attachment['ipfs_hash'])
        return {**attachment, 'content': content, 'size': attachment['size'] or len(content)}

__all__ = ['AttachmentManager']
