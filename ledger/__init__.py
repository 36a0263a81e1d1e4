"""Ledger client for the substrate node running the UTXO-NFT pallet.

The client is the only component talking to the node. Calls into
substrate-interface are blocking, so they run in a worker thread behind a
lock that serialises use of the single websocket connection. Transport
failures are retried with exponential backoff and reconnect on the next
attempt.
"""
import asyncio
import hashlib
import logging
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import backoff
from substrateinterface import Keypair, SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException
from websocket import WebSocketException

from config import settings_conf
from models import TokenOutput
from .payload import MetadataKind, MetadataValue, Payload

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (WebSocketException, ConnectionError, OSError, BrokenPipeError)

class LedgerError(Exception):
    """Base exception for ledger errors"""
    pass

class NodeConnectionError(LedgerError):
    """Raised when the node cannot be reached"""
    pass

class UnknownRoleError(LedgerError):
    """Raised when a role name is not defined by the runtime"""
    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Invalid role: {role}")

class DispatchError(LedgerError):
    """A module error raised by the runtime while dispatching an extrinsic

    Common errors of the UTXO-NFT pallet:
    NotOwned                  - Input token is not owned by the sender
    AlreadyBurnt              - Input token has already been burnt
    ProcessInvalid            - Process id or version is not enabled
    ProcessRestrictionsNotMet - Process restrictions were not satisfied
    """
    # Map of known pallet error names to human-readable messages
    ERROR_MESSAGES = {
        'NotOwned': "Attempted to process an asset that is not owned by the sender",
        'AlreadyBurnt': "Attempted to process an asset that has already been burnt",
        'TooManyInputs': "Too many input tokens",
        'TooManyOutputs': "Too many output tokens",
        'ProcessInvalid': "Process is invalid or disabled",
        'ProcessRestrictionsNotMet': "Process restrictions were not satisfied",
        'InvalidTransaction': "Transaction was rejected by the node",
    }

    def __init__(self, code: str, module: Optional[str] = None, message: str = ''):
        self.code = code
        self.module = module
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown dispatch error")
        detail = f" - {message}" if message and message != standard_msg else ''
        prefix = f"{module}.{code}" if module else code
        super().__init__(f"Node dispatch error {prefix}: {standard_msg}{detail}")

class Extrinsic:
    """A signed run_process extrinsic that has not necessarily been submitted"""

    def __init__(self, extrinsic, payload: Payload):
        self.extrinsic = extrinsic
        self.payload = payload
        self.hash = strip_hex_prefix(hashlib.blake2b(bytes(extrinsic.data.data), digest_size=32).hexdigest())

    def __repr__(self) -> str:
        return f"Extrinsic({self.payload.process.value}, {self.hash})"

def strip_hex_prefix(value: str) -> str:
    return value[2:] if value.startswith('0x') else value

def decode_bytes(value) -> Any:
    """Decode a SCALE byte vector as text, leaving other values untouched."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8')
    if isinstance(value, str) and value.startswith('0x'):
        try:
            return bytes.fromhex(value[2:]).decode('utf-8')
        except ValueError:
            return value
    return value

def _pairs(value) -> List:
    """BTreeMap values decode as either a dict or a list of (key, value) pairs."""
    if value is None:
        return []
    if isinstance(value, dict):
        return list(value.items())
    return [tuple(item) for item in value]

def decode_metadata_value(value) -> Any:
    if value is None or value == 'None':
        return None
    if isinstance(value, dict):
        kind, inner = next(iter(value.items()))
        if kind == 'TokenId':
            return int(inner)
        if kind == 'None':
            return None
        return decode_bytes(inner)
    return decode_bytes(value)

class LedgerClient:
    """Client for submitting processes to and reading blocks from the node"""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user_uri: Optional[str] = None,
        pallet: Optional[str] = None,
        retry_attempts: Optional[int] = None,
        substrate_factory: Callable[..., SubstrateInterface] = SubstrateInterface
    ):
        """Initialize client with configuration from settings.conf

        Args:
            host: Node host, defaults to node_host
            port: Node websocket port, defaults to node_port
            user_uri: Signing key URI, defaults to user_uri
            pallet: Name of the UTXO-NFT pallet, defaults to node_pallet
            retry_attempts: Attempts per call on transport failure
            substrate_factory: Builds the underlying SubstrateInterface
        """
        settings = settings_conf()
        self.host = host or settings['node_host']
        self.port = port or settings['node_port']
        self.user_uri = user_uri or settings['user_uri']
        self.pallet = pallet or settings['node_pallet']
        self.retry_attempts = retry_attempts or settings['node_retry_attempts']
        self.url = f"ws://{self.host}:{self.port}"

        self._substrate_factory = substrate_factory
        self._substrate: Optional[SubstrateInterface] = None
        self._keypair: Optional[Keypair] = None
        self._roles: Dict[str, int] = {}
        self._next_nonce: Optional[int] = None
        self._lock = threading.Lock()

        self._call = backoff.on_exception(
            backoff.expo,
            NodeConnectionError,
            max_tries=self.retry_attempts,
            max_value=10,
            on_backoff=self._log_retry
        )(self._call_once)

    @property
    def connected(self) -> bool:
        return self._substrate is not None

    @property
    def address(self) -> str:
        if self._keypair is None:
            self._keypair = Keypair.create_from_uri(self.user_uri)
        return self._keypair.ss58_address

    @staticmethod
    def _log_retry(details):
        logger.warning(
            f"Ledger call failed, retrying in {details['wait']:.1f}s "
            f"(attempt {details['tries']})"
        )

    async def connect(self) -> None:
        """Open the node connection, retrying on transport failure"""
        await self._call(lambda substrate: None)

    async def close(self) -> None:
        with self._lock:
            self._disconnect()

    def _connect(self) -> SubstrateInterface:
        if self._substrate is None:
            try:
                self._substrate = self._substrate_factory(url=self.url)
            except TRANSPORT_ERRORS as e:
                logger.error(f"Error from substrate node connection at {self.host}:{self.port}: {e}")
                raise NodeConnectionError(f"Failed to connect to node at {self.url}") from e
            self._next_nonce = None
            logger.info(f"Connected to substrate node at {self.host}:{self.port}")
        return self._substrate

    def _disconnect(self) -> None:
        if self._substrate is not None:
            try:
                self._substrate.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Error closing node connection: {e}")
            self._substrate = None
            logger.warning(f"Disconnected from substrate node at {self.host}:{self.port}")

    def _run(self, fn: Callable[[SubstrateInterface], Any]) -> Any:
        with self._lock:
            substrate = self._connect()
            try:
                return fn(substrate)
            except TRANSPORT_ERRORS as e:
                self._disconnect()
                raise NodeConnectionError(f"Lost connection to node at {self.url}: {e}") from e

    async def _call_once(self, fn: Callable[[SubstrateInterface], Any]) -> Any:
        return await asyncio.to_thread(self._run, fn)

    # Operation encoding

    def _load_roles(self, substrate: SubstrateInterface) -> Dict[str, int]:
        """Read the Role enum variants from the runtime's type registry"""
        for entry in substrate.metadata.portable_registry.value['types']:
            path = entry['type'].get('path') or []
            variants = entry['type'].get('def', {}).get('variant')
            if path and path[-1] == 'Role' and variants:
                return {v['name']: v['index'] for v in variants['variants']}
        raise LedgerError("No roles found on-chain")

    def resolve_role(self, role: str) -> int:
        """Index of a role in the runtime's Role enum. Roles must already be loaded."""
        if role not in self._roles:
            raise UnknownRoleError(role)
        return self._roles[role]

    @staticmethod
    def resolve_metadata_value(kind: MetadataKind, value: Any = None) -> Dict[str, Any]:
        """Encode a metadata value as the TokenMetadataValue enum"""
        if kind == MetadataKind.LITERAL:
            return {'Literal': str(value)}
        if kind == MetadataKind.FILE:
            return {'File': value}
        if kind == MetadataKind.TOKEN_ID:
            return {'TokenId': int(value)}
        if kind == MetadataKind.NONE:
            return {'None': None}
        raise LedgerError(f"Unknown metadata kind: {kind}")

    def _encode_outputs(self, payload: Payload) -> List[Dict[str, Any]]:
        outputs = []
        for output in payload.outputs:
            roles = [(self.resolve_role(name), address) for name, address in output.roles.items()]
            metadata = [
                (key, self.resolve_metadata_value(value.type, value.value))
                for key, value in output.metadata.items()
            ]
            outputs.append({'roles': roles, 'metadata': metadata})
        return outputs

    async def prepare(self, payload: Payload) -> Extrinsic:
        """Encode and sign a run_process extrinsic without submitting it.

        The extrinsic hash is known from here on, so callers can record it
        before submission.
        """
        def prepare(substrate: SubstrateInterface):
            if not self._roles:
                self._roles = self._load_roles(substrate)
            if self._keypair is None:
                self._keypair = Keypair.create_from_uri(self.user_uri)

            call = substrate.compose_call(
                call_module=self.pallet,
                call_function='run_process',
                call_params={
                    'process': {'id': payload.process.value, 'version': payload.version},
                    'inputs': payload.inputs,
                    'outputs': self._encode_outputs(payload)
                }
            )
            nonce = substrate.get_account_nonce(self._keypair.ss58_address)
            if self._next_nonce is not None and self._next_nonce > nonce:
                nonce = self._next_nonce
            self._next_nonce = nonce + 1
            return substrate.create_signed_extrinsic(call=call, keypair=self._keypair, nonce=nonce)

        logger.debug(f"Preparing {payload.process.value} inputs: {payload.inputs} outputs: {len(payload.outputs)}")
        return Extrinsic(await self._call(prepare), payload)

    async def submit(self, extrinsic: Extrinsic) -> str:
        """Submit a prepared extrinsic and return its hash without waiting for inclusion

        Raises:
            DispatchError: The node refused the extrinsic
            NodeConnectionError: The node could not be reached after retries
        """
        def submit(substrate: SubstrateInterface):
            try:
                substrate.submit_extrinsic(extrinsic.extrinsic, wait_for_inclusion=False)
            except SubstrateRequestException as e:
                # The nonce was not consumed, re-read it from the node
                self._next_nonce = None
                raise DispatchError('InvalidTransaction', message=str(e)) from e

        await self._call(submit)
        logger.info(f"Submitted {extrinsic}")
        return extrinsic.hash

    async def release(self, extrinsic: Extrinsic) -> None:
        """Give up a prepared extrinsic that will never be submitted.

        The next prepare reads the account nonce from the node again instead
        of signing past the released one.
        """
        def release():
            with self._lock:
                self._next_nonce = None

        await asyncio.to_thread(release)
        logger.info(f"Released {extrinsic}")

    async def watch_finality(
        self,
        extrinsic: Extrinsic,
        on_result: Callable[[bool, Optional[DispatchError]], Awaitable[None]],
        poll_period: float = 1.0,
        max_blocks: int = 64,
        start: Optional[int] = None
    ) -> bool:
        """Wait for a submitted extrinsic to land in a block and report its outcome.

        Best-blocks are scanned from start, which should be the best height
        read before submission, until the extrinsic appears or max_blocks
        have passed (the default signed-extrinsic mortality). Without start
        the scan begins at the current best height. Returns whether an
        outcome was reported.
        """
        if start is None:
            start = await self.get_best_block_number()
        height = start
        while height <= start + max_blocks:
            best = await self.get_best_block_number()
            while height <= best:
                block_hash = await self.get_block_hash(height)
                for event in await self.get_block_events(block_hash):
                    if event['extrinsic_hash'] != extrinsic.hash:
                        continue
                    if event['event'] == 'ExtrinsicSuccess':
                        await on_result(True, None)
                        return True
                    if event['event'] == 'ExtrinsicFailed':
                        await on_result(False, event['error'])
                        return True
                height += 1
            await asyncio.sleep(poll_period)
        logger.warning(f"{extrinsic} not seen in {max_blocks} blocks, leaving it to the indexer")
        return False

    # Block access

    async def get_last_finalised_block_hash(self) -> str:
        return await self._call(lambda substrate: substrate.get_chain_finalised_head())

    async def get_best_block_number(self) -> int:
        header = await self._call(lambda substrate: substrate.rpc_request('chain_getHeader', [])['result'])
        return int(header['number'], 16)

    async def get_header(self, block_hash: str) -> Dict[str, Any]:
        header = await self._call(
            lambda substrate: substrate.rpc_request('chain_getHeader', [block_hash])['result']
        )
        if header is None:
            raise LedgerError(f"Unknown block {block_hash}")
        return {
            'hash': block_hash,
            'height': int(header['number'], 16),
            'parent': header['parentHash']
        }

    async def get_block_hash(self, height: int) -> Optional[str]:
        return await self._call(lambda substrate: substrate.get_block_hash(height))

    async def finalised_headers(self, poll_period: float = 1.0) -> AsyncIterator[Dict[str, Any]]:
        """Yield each newly finalised head. Connection failures are logged and polling continues."""
        last_hash = None
        while True:
            try:
                block_hash = await self.get_last_finalised_block_hash()
                if block_hash != last_hash:
                    header = await self.get_header(block_hash)
                    last_hash = block_hash
                    yield header
            except NodeConnectionError as e:
                logger.error(f"Error polling finalised head: {e}")
            await asyncio.sleep(poll_period)

    def decode_dispatch_error(self, substrate: SubstrateInterface, error) -> DispatchError:
        """Translate a decoded DispatchError value into a DispatchError exception"""
        if isinstance(error, dict) and 'Module' in error:
            module_error = error['Module']
            module_index = module_error['index']
            error_index = module_error['error']
            if isinstance(error_index, str):
                error_index = bytes.fromhex(strip_hex_prefix(error_index))[0]
            meta_error = substrate.metadata.get_module_error(module_index=module_index, error_index=error_index)
            if meta_error is None:
                return DispatchError(f"Error{error_index}", module=str(module_index))
            return DispatchError(meta_error.value['name'], module=str(module_index))
        if isinstance(error, dict):
            return DispatchError(next(iter(error)))
        return DispatchError(str(error))

    async def get_block_events(self, block_hash: str) -> List[Dict[str, Any]]:
        """Decode the events of a block that concern extrinsics, in block order.

        Each entry has 'event' (ProcessRan, ExtrinsicSuccess or ExtrinsicFailed)
        and 'extrinsic_hash'. ProcessRan entries carry process, version,
        sender, inputs and outputs; ExtrinsicFailed entries carry error.
        """
        def read(substrate: SubstrateInterface):
            block = substrate.get_block(block_hash=block_hash)
            hashes = [
                hashlib.blake2b(bytes(extrinsic.data.data), digest_size=32).hexdigest()
                for extrinsic in block['extrinsics']
            ]
            result = []
            for record in substrate.get_events(block_hash=block_hash):
                value = record.value
                index = value.get('extrinsic_idx')
                if index is None or index >= len(hashes):
                    continue
                module_id = value.get('module_id') or value['event']['module_id']
                event_id = value.get('event_id') or value['event']['event_id']
                attributes = value.get('attributes', value.get('event', {}).get('attributes'))
                entry = {'event': event_id, 'extrinsic_hash': hashes[index]}

                if module_id == 'System' and event_id == 'ExtrinsicSuccess':
                    result.append(entry)
                elif module_id == 'System' and event_id == 'ExtrinsicFailed':
                    error = attributes.get('dispatch_error') if isinstance(attributes, dict) else attributes[0]
                    entry['error'] = self.decode_dispatch_error(substrate, error)
                    result.append(entry)
                elif module_id == self.pallet and event_id == 'ProcessRan':
                    process = attributes['process']
                    entry.update({
                        'process': decode_bytes(process['id']),
                        'version': int(process['version']),
                        'sender': attributes['sender'],
                        'inputs': [int(token) for token in attributes['inputs']],
                        'outputs': [int(token) for token in attributes['outputs']]
                    })
                    result.append(entry)
            return result

        return await self._call(read)

    async def get_token(self, token_id: int) -> TokenOutput:
        """Read a token's roles and metadata from chain state"""
        def read(substrate: SubstrateInterface):
            return substrate.query(self.pallet, 'TokensById', [token_id]).value

        token = await self._call(read)
        if not token:
            raise LedgerError(f"Token {token_id} not found")
        return TokenOutput(
            id=token_id,
            roles={decode_bytes(role): account for role, account in _pairs(token.get('roles'))},
            metadata={
                decode_bytes(key): decode_metadata_value(value)
                for key, value in _pairs(token.get('metadata'))
            }
        )

__all__ = [
    'LedgerClient',
    'Extrinsic',
    'LedgerError',
    'NodeConnectionError',
    'DispatchError',
    'UnknownRoleError',
]
