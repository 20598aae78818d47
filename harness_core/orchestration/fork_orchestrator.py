"""
Multi-Chain Fork Orchestrator
=============================

Drives several forked-chain instances (chopsticks) that each produce blocks
only on demand, and relays cross-chain messages between them.

Relay ordering:

    1. produce a block on the sender
    2. poll the sender until the outbound message is observably queued
    3. only then produce a block on the receiver

The receiver never produces a block before step 2 succeeds. Each step retries
a bounded number of times and failures are tagged with the leg (send/receive)
that broke.

Usage:
    orchestrator = await launch_multi_chain(polkadot_moonbeam_config(), launcher)
    try:
        await orchestrator.relay_message(
            orchestrator.relay, orchestrator.parachain(2004),
            storage_probe(DMP_QUEUE_KEY),
        )
    finally:
        await orchestrator.teardown()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import aiohttp

from harness_core.config import RelayConfig, get_config
from harness_core.core.error_handling import (
    ChopsticksBlockError,
    ChopsticksSetupError,
    ChopsticksStorageError,
    ChopsticksXcmError,
    RetryConfig,
    RetryHandler,
)
from harness_core.orchestration.launcher import LaunchSpec, NodeLauncher
from harness_core.orchestration.readiness import ReadinessStrategy

logger = logging.getLogger(__name__)

CHOPSTICKS_COMMAND = ["npx", "--yes", "@acala-network/chopsticks@latest"]
CHOPSTICKS_READY_PATTERNS = ["Listening on", "RPC listening on port"]


@dataclass
class BlockRef:
    hash: str
    number: int


class JsonRpcError(Exception):
    def __init__(self, method: str, error: Any):
        super().__init__(f"{method}: {error}")
        self.method = method
        self.error = error


class ForkClient:
    """JSON-RPC client for one fork instance over a persistent websocket."""

    def __init__(self, endpoint: str, call_timeout: float = 30.0):
        self.endpoint = endpoint
        self.call_timeout = call_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)

    @classmethod
    async def connect(cls, endpoint: str, connect_timeout: float = 10.0) -> "ForkClient":
        client = cls(endpoint)
        client._session = aiohttp.ClientSession()
        try:
            client._ws = await asyncio.wait_for(
                client._session.ws_connect(endpoint, max_msg_size=0),
                timeout=connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await client._session.close()
            raise ChopsticksSetupError(endpoint, e) from e
        return client

    async def call(self, method: str, params: Sequence[Any] = ()) -> Any:
        if self._ws is None or self._ws.closed:
            raise ConnectionError(f"not connected to {self.endpoint}")

        async with self._lock:
            request_id = next(self._ids)
            await self._ws.send_json(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params)}
            )
            while True:
                reply = await asyncio.wait_for(self._ws.receive_json(), timeout=self.call_timeout)
                # Subscription notifications carry no id.
                if reply.get("id") != request_id:
                    continue
                if "error" in reply:
                    raise JsonRpcError(method, reply["error"])
                return reply.get("result")

    async def get_head(self) -> BlockRef:
        header = await self.call("chain_getHeader")
        block_hash = await self.call("chain_getBlockHash", [int(header["number"], 16)])
        return BlockRef(hash=block_hash, number=int(header["number"], 16))

    async def new_block(self, params: Optional[Dict[str, Any]] = None) -> Any:
        """dev_newBlock; params may carry count, to, dmp, ump, hrmp, transactions."""
        return await self.call("dev_newBlock", [params or {}])

    async def set_storage(self, values: Dict[str, Any], block_hash: Optional[str] = None) -> Any:
        params: List[Any] = [values]
        if block_hash:
            params.append(block_hash)
        return await self.call("dev_setStorage", params)

    async def set_head(self, hash_or_number: Union[str, int]) -> Any:
        return await self.call("dev_setHead", [hash_or_number])

    async def get_storage(self, key: str, block_hash: Optional[str] = None) -> Optional[str]:
        params: List[Any] = [key]
        if block_hash:
            params.append(block_hash)
        return await self.call("state_getStorage", params)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()


@dataclass
class ChainInstance:
    """One running fork."""
    name: str
    role: str
    endpoint: str
    client: Any
    para_id: Optional[int] = None
    head: Optional[BlockRef] = None


@dataclass
class ChainLaunchConfig:
    """How to start one chopsticks fork."""
    name: str
    endpoint: str
    port: int
    role: str = "parachain"
    para_id: Optional[int] = None
    block: Optional[Union[int, str]] = None
    build_block_mode: str = "Manual"
    wasm_override: Optional[str] = None
    db: Optional[str] = None
    extra_args: List[str] = field(default_factory=list)

    def to_args(self) -> List[str]:
        args = [
            f"--endpoint={self.endpoint}",
            f"--port={self.port}",
            f"--build-block-mode={self.build_block_mode}",
        ]
        if self.block is not None:
            args.append(f"--block={self.block}")
        if self.wasm_override:
            args.append(f"--wasm-override={self.wasm_override}")
        if self.db:
            args.append(f"--db={self.db}")
        return args + list(self.extra_args)

    @property
    def local_endpoint(self) -> str:
        return f"ws://127.0.0.1:{self.port}"


@dataclass
class MultiChainConfig:
    relay: ChainLaunchConfig
    parachains: List[ChainLaunchConfig] = field(default_factory=list)
    command: List[str] = field(default_factory=lambda: list(CHOPSTICKS_COMMAND))
    deadline: float = 120.0


@dataclass
class RelayResult:
    sent: BlockRef
    received: BlockRef
    probe_attempts: int


OutboundProbe = Callable[[ChainInstance], Awaitable[bool]]


def storage_probe(key: str) -> OutboundProbe:
    """Probe that succeeds once ``key`` holds a non-empty value on the chain."""

    async def probe(chain: ChainInstance) -> bool:
        value = await chain.client.get_storage(key)
        return bool(value) and value != "0x"

    return probe


class MultiChainOrchestrator:
    """Coordinates block production and message relay across fork instances."""

    def __init__(
        self,
        relay: ChainInstance,
        parachains: Optional[Sequence[ChainInstance]] = None,
        config: Optional[RelayConfig] = None,
        launcher: Optional[NodeLauncher] = None,
    ):
        self.config = config or get_config().relay
        self.relay = relay
        self._parachains: Dict[int, ChainInstance] = {p.para_id: p for p in (parachains or [])}
        self._launcher = launcher
        self._launched: List[str] = []

        self.chains: Dict[str, ChainInstance] = {"relay": relay}
        for para_id, chain in self._parachains.items():
            self.chains[f"para-{para_id}"] = chain

        self._retry = RetryHandler(
            RetryConfig(
                max_retries=self.config.max_retries,
                base_delay=self.config.retry_delay,
                exponential_base=1.0,
            ),
            on_retry=lambda attempt, e: logger.warning(f"[Fork] Retry {attempt}: {e}"),
        )

    def parachain(self, para_id: int) -> Optional[ChainInstance]:
        return self._parachains.get(para_id)

    def _require_parachain(self, para_id: int, message_type: str) -> ChainInstance:
        chain = self._parachains.get(para_id)
        if chain is None:
            raise ChopsticksXcmError(message_type, para_id, cause=f"parachain {para_id} not found")
        return chain

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    async def new_block(
        self,
        chain: ChainInstance,
        params: Optional[Dict[str, Any]] = None,
        leg: Optional[str] = None,
    ) -> BlockRef:
        """
        Produce a block, then read the new head; raises ChopsticksBlockError tagged with ``leg``.

        Block production and the head lookup retry separately; a failed lookup
        never produces another block.
        """
        try:
            await self._retry.execute(chain.client.new_block, params)
        except Exception as e:
            raise ChopsticksBlockError("newBlock", chain=chain.name, leg=leg, cause=e) from e
        try:
            block = await self._retry.execute(chain.client.get_head)
        except Exception as e:
            raise ChopsticksBlockError("getHead", chain=chain.name, leg=leg, cause=e) from e
        chain.head = block
        logger.debug(f"[Fork] {chain.name} produced block #{block.number} ({block.hash})")
        return block

    async def create_blocks_all(self) -> Dict[str, BlockRef]:
        names = list(self.chains)
        blocks = await asyncio.gather(*(self.new_block(self.chains[n]) for n in names))
        return dict(zip(names, blocks))

    async def set_storage(self, chain: ChainInstance, module: str, method: str, params: Any) -> None:
        try:
            await chain.client.set_storage({module: {method: params}})
        except Exception as e:
            raise ChopsticksStorageError(module, method, e) from e

    async def set_head(self, chain: ChainInstance, hash_or_number: Union[str, int]) -> None:
        try:
            await chain.client.set_head(hash_or_number)
            chain.head = await chain.client.get_head()
        except Exception as e:
            raise ChopsticksBlockError("setHead", chain=chain.name, block_identifier=hash_or_number, cause=e) from e

    # ------------------------------------------------------------------
    # Cross-chain messages
    # ------------------------------------------------------------------

    async def send_ump(self, para_id: int, messages: List[str]) -> BlockRef:
        """Upward messages from ``para_id``, delivered on the relay."""
        self._require_parachain(para_id, "ump")
        try:
            return await self.new_block(self.relay, {"ump": {str(para_id): messages}}, leg="receive")
        except ChopsticksBlockError as e:
            raise ChopsticksXcmError("ump", para_id, leg="receive", cause=e) from e

    async def send_dmp(self, para_id: int, messages: List[Dict[str, Any]]) -> BlockRef:
        """Downward messages (``{sentAt, msg}``) from the relay to ``para_id``."""
        para = self._require_parachain(para_id, "dmp")
        try:
            return await self.new_block(para, {"dmp": messages}, leg="receive")
        except ChopsticksBlockError as e:
            raise ChopsticksXcmError("dmp", para_id, leg="receive", cause=e) from e

    async def send_hrmp(self, from_para_id: int, to_para_id: int, messages: List[Dict[str, Any]]) -> BlockRef:
        """Horizontal messages (``{sentAt, data}``) between two parachains."""
        target = self._require_parachain(to_para_id, "hrmp")
        try:
            return await self.new_block(target, {"hrmp": {str(from_para_id): messages}}, leg="receive")
        except ChopsticksBlockError as e:
            raise ChopsticksXcmError("hrmp", to_para_id, leg="receive", cause=e) from e

    async def process_xcm(self) -> None:
        """One block on the relay, then on each parachain."""
        await self.new_block(self.relay)
        for chain in self._parachains.values():
            await self.new_block(chain)

    async def relay_message(
        self,
        sender: ChainInstance,
        receiver: ChainInstance,
        outbound_probe: OutboundProbe,
        params: Optional[Dict[str, Any]] = None,
    ) -> RelayResult:
        """
        Move a message from ``sender`` to ``receiver`` in the safe order.

        Raises:
            ChopsticksBlockError: block production failed (leg "send"/"receive")
            ChopsticksXcmError: message never observed in the sender's queue (leg "send")
        """
        sent = await self.new_block(sender, params, leg="send")

        attempts = 0
        queued = False
        last_error: Optional[BaseException] = None
        while attempts < self.config.probe_attempts:
            attempts += 1
            try:
                queued = await outbound_probe(sender)
            except Exception as e:
                last_error = e
                queued = False
            if queued:
                break
            await asyncio.sleep(self.config.probe_interval)

        if not queued:
            raise ChopsticksXcmError(
                "relay",
                receiver.para_id,
                leg="send",
                cause=last_error or f"message not queued on {sender.name} after {attempts} probes",
            )

        received = await self.new_block(receiver, leg="receive")
        logger.info(
            f"[Fork] Relayed {sender.name}#{sent.number} -> {receiver.name}#{received.number}"
        )
        return RelayResult(sent=sent, received=received, probe_attempts=attempts)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Close clients and stop launched forks, newest first."""
        for chain in reversed(list(self.chains.values())):
            try:
                await chain.client.close()
            except Exception as e:
                logger.debug(f"[Fork] Closing client for {chain.name} failed: {e}")
        if self._launcher is not None:
            for name in reversed(self._launched):
                await self._launcher.kill(name, reason="multi-chain teardown")
        self._launched.clear()


def _launch_spec(chain: ChainLaunchConfig, config: MultiChainConfig) -> LaunchSpec:
    return LaunchSpec(
        name=chain.name,
        command=config.command[0],
        args=list(config.command[1:]) + chain.to_args(),
        strategy=ReadinessStrategy.LOG_PATTERN,
        deadline=config.deadline,
        ephemeral_port=False,
        ready_patterns=list(CHOPSTICKS_READY_PATTERNS),
    )


async def launch_multi_chain(
    config: MultiChainConfig,
    launcher: NodeLauncher,
    client_factory: Callable[[str], Awaitable[Any]] = ForkClient.connect,
    relay_config: Optional[RelayConfig] = None,
) -> MultiChainOrchestrator:
    """
    Launch the relay, then each parachain, and connect to all of them.

    Anything already started is torn down if a later launch fails.

    Raises:
        ChopsticksSetupError
    """
    launched: List[str] = []
    instances: List[ChainInstance] = []

    try:
        for chain in [config.relay] + list(config.parachains):
            logger.info(f"[Fork] Launching {chain.name} forked from {chain.endpoint}")
            await launcher.launch(_launch_spec(chain, config))
            launched.append(chain.name)

            client = await client_factory(chain.local_endpoint)
            instance = ChainInstance(
                name=chain.name,
                role=chain.role,
                endpoint=chain.local_endpoint,
                client=client,
                para_id=chain.para_id,
            )
            instances.append(instance)
            instance.head = await client.get_head()
    except Exception as e:
        logger.error(f"[Fork] Multi-chain launch failed, cleaning up {len(launched)} fork(s)")
        for instance in reversed(instances):
            try:
                await instance.client.close()
            except Exception as close_error:
                logger.debug(f"[Fork] Closing {instance.name} failed: {close_error}")
        for name in reversed(launched):
            await launcher.kill(name, reason="multi-chain launch failed")
        if isinstance(e, ChopsticksSetupError):
            raise
        endpoint = config.relay.local_endpoint if not instances else None
        raise ChopsticksSetupError(endpoint, e) from e

    orchestrator = MultiChainOrchestrator(
        relay=instances[0],
        parachains=instances[1:],
        config=relay_config,
        launcher=launcher,
    )
    orchestrator._launched = launched
    return orchestrator


def polkadot_moonbeam_config(relay_port: int = 8000, moonbeam_port: int = 8001) -> MultiChainConfig:
    return MultiChainConfig(
        relay=ChainLaunchConfig(
            name="polkadot",
            role="relay",
            endpoint="wss://rpc.polkadot.io",
            port=relay_port,
        ),
        parachains=[
            ChainLaunchConfig(
                name="moonbeam",
                para_id=2004,
                endpoint="wss://wss.api.moonbeam.network",
                port=moonbeam_port,
            ),
        ],
    )


def kusama_moonriver_config(relay_port: int = 8000, moonriver_port: int = 8001) -> MultiChainConfig:
    return MultiChainConfig(
        relay=ChainLaunchConfig(
            name="kusama",
            role="relay",
            endpoint="wss://kusama-rpc.polkadot.io",
            port=relay_port,
        ),
        parachains=[
            ChainLaunchConfig(
                name="moonriver",
                para_id=2023,
                endpoint="wss://wss.api.moonriver.moonbeam.network",
                port=moonriver_port,
            ),
        ],
    )


PRESETS = {
    "polkadot-moonbeam": polkadot_moonbeam_config,
    "kusama-moonriver": kusama_moonriver_config,
}


__all__ = [
    "BlockRef",
    "ForkClient",
    "JsonRpcError",
    "ChainInstance",
    "ChainLaunchConfig",
    "MultiChainConfig",
    "MultiChainOrchestrator",
    "RelayResult",
    "storage_probe",
    "launch_multi_chain",
    "polkadot_moonbeam_config",
    "kusama_moonriver_config",
    "PRESETS",
]
