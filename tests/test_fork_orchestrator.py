"""Tests for multi-chain fork orchestration and message relay."""

from __future__ import annotations

import pytest

from harness_core.config import RelayConfig
from harness_core.core import (
    ChopsticksBlockError,
    ChopsticksSetupError,
    ChopsticksXcmError,
    LaunchError,
)
from harness_core.orchestration.fork_orchestrator import (
    BlockRef,
    ChainInstance,
    ChainLaunchConfig,
    MultiChainOrchestrator,
    kusama_moonriver_config,
    launch_multi_chain,
    polkadot_moonbeam_config,
    storage_probe,
)

OUTBOUND_KEY = "0xoutbound"
BALANCE_KEY = "0xbalance"


class FakeChain:
    """
    In-memory fork instance.

    A block on the sender moves ``pending`` into its outbound queue after
    ``queue_lag`` probes; a block on the receiver drains the sender's queue
    and credits the balance.
    """

    def __init__(self, name, log, fail_blocks=0, queue_lag=0):
        self.name = name
        self.log = log
        self.number = 0
        self.storage = {}
        self.pending = []
        self.inbound_from = None
        self.fail_blocks = fail_blocks
        self.queue_lag = queue_lag
        self._staged = []
        self.closed = False

    async def new_block(self, params=None):
        self.log.append(("block", self.name))
        if self.fail_blocks:
            self.fail_blocks -= 1
            raise ConnectionError(f"{self.name} dropped the connection")
        self.number += 1
        if self.pending:
            self._staged.extend(self.pending)
            self.pending = []
        if self.inbound_from is not None:
            queue = self.inbound_from.storage.pop(OUTBOUND_KEY, [])
            credited = int(self.storage.get(BALANCE_KEY, "0"))
            self.storage[BALANCE_KEY] = str(credited + sum(queue))
        return BlockRef(hash=f"0x{self.name}{self.number}", number=self.number)

    async def get_storage(self, key):
        self.log.append(("probe", self.name))
        if key == OUTBOUND_KEY and self._staged:
            if self.queue_lag:
                self.queue_lag -= 1
                return None
            self.storage[OUTBOUND_KEY] = self._staged
            self._staged = []
        value = self.storage.get(key)
        return "0x01" if value else None

    async def set_storage(self, values, block_hash=None):
        self.log.append(("set_storage", values))

    async def set_head(self, hash_or_number):
        self.number = int(hash_or_number)

    async def get_head(self):
        return BlockRef(hash=f"0x{self.name}{self.number}", number=self.number)

    async def close(self):
        self.closed = True


@pytest.fixture
def relay_config():
    return RelayConfig(max_retries=2, retry_delay=0.0, probe_attempts=5, probe_interval=0.0)


def _pair(log, **sender_kwargs):
    a = FakeChain("A", log, **sender_kwargs)
    b = FakeChain("B", log)
    b.inbound_from = a
    relay = ChainInstance("A", "relay", "ws://a", a)
    para = ChainInstance("B", "parachain", "ws://b", b, para_id=2004)
    return relay, para


class TestRelayOrdering:
    """Receiver blocks are only produced after the message is queued."""

    @pytest.mark.asyncio
    async def test_balance_on_receiver_reflects_message(self, relay_config):
        log = []
        sender, receiver = _pair(log)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)
        sender.client.pending.append(100)

        result = await orchestrator.relay_message(sender, receiver, storage_probe(OUTBOUND_KEY))

        assert receiver.client.storage[BALANCE_KEY] == "100"
        assert result.sent.number == 1
        assert result.received.number == 1
        assert sender.head == result.sent
        assert receiver.head == result.received

    @pytest.mark.asyncio
    async def test_receiver_waits_for_queue(self, relay_config):
        log = []
        sender, receiver = _pair(log, queue_lag=2)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)
        sender.client.pending.append(7)

        result = await orchestrator.relay_message(sender, receiver, storage_probe(OUTBOUND_KEY))

        assert result.probe_attempts == 3
        assert log.index(("block", "B")) > max(i for i, e in enumerate(log) if e == ("probe", "A"))
        assert receiver.client.storage[BALANCE_KEY] == "7"

    @pytest.mark.asyncio
    async def test_message_never_queued_is_send_leg_xcm_error(self, relay_config):
        log = []
        sender, receiver = _pair(log)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        with pytest.raises(ChopsticksXcmError) as exc_info:
            await orchestrator.relay_message(sender, receiver, storage_probe(OUTBOUND_KEY))

        assert exc_info.value.leg == "send"
        assert ("block", "B") not in log
        assert log.count(("probe", "A")) == relay_config.probe_attempts


class TestRetries:
    """Each leg retries a bounded number of times."""

    @pytest.mark.asyncio
    async def test_transient_block_failure_is_retried(self, relay_config):
        log = []
        sender, receiver = _pair(log, fail_blocks=2)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)
        sender.client.pending.append(1)

        await orchestrator.relay_message(sender, receiver, storage_probe(OUTBOUND_KEY))

        assert log.count(("block", "A")) == 3
        assert receiver.client.storage[BALANCE_KEY] == "1"

    @pytest.mark.asyncio
    async def test_send_leg_exhaustion(self, relay_config):
        log = []
        sender, receiver = _pair(log, fail_blocks=10)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        with pytest.raises(ChopsticksBlockError) as exc_info:
            await orchestrator.relay_message(sender, receiver, storage_probe(OUTBOUND_KEY))

        assert exc_info.value.leg == "send"
        assert exc_info.value.chain == "A"
        assert log.count(("block", "A")) == relay_config.max_retries + 1

    @pytest.mark.asyncio
    async def test_failed_head_lookup_does_not_produce_another_block(self, relay_config):
        log = []
        sender, receiver = _pair(log)
        real_get_head = sender.client.get_head
        failures = [ConnectionError("header lookup dropped")]

        async def flaky_get_head():
            if failures:
                raise failures.pop()
            return await real_get_head()

        sender.client.get_head = flaky_get_head
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        block = await orchestrator.new_block(sender, leg="send")

        assert log.count(("block", "A")) == 1
        assert block.number == 1
        assert sender.head == block

    @pytest.mark.asyncio
    async def test_head_lookup_exhaustion_is_tagged(self, relay_config):
        sender, receiver = _pair([])

        async def broken_get_head():
            raise ConnectionError("header lookup dropped")

        receiver.client.get_head = broken_get_head
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        with pytest.raises(ChopsticksBlockError) as exc_info:
            await orchestrator.new_block(receiver, leg="receive")

        assert exc_info.value.operation == "getHead"
        assert exc_info.value.leg == "receive"
        assert receiver.client.number == 1

    @pytest.mark.asyncio
    async def test_receive_leg_exhaustion(self, relay_config):
        log = []
        sender, receiver = _pair(log)
        receiver.client.fail_blocks = 10
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)
        sender.client.pending.append(1)

        with pytest.raises(ChopsticksBlockError) as exc_info:
            await orchestrator.relay_message(sender, receiver, storage_probe(OUTBOUND_KEY))

        assert exc_info.value.leg == "receive"
        assert exc_info.value.chain == "B"


class TestMessages:
    """UMP / DMP / HRMP helpers and block production across chains."""

    @pytest.mark.asyncio
    async def test_create_blocks_all(self, relay_config):
        sender, receiver = _pair([])
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        blocks = await orchestrator.create_blocks_all()

        assert set(blocks) == {"relay", "para-2004"}
        assert orchestrator.parachain(2004) is receiver

    @pytest.mark.asyncio
    async def test_process_xcm_relay_first(self, relay_config):
        log = []
        sender, receiver = _pair(log)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        await orchestrator.process_xcm()

        assert log == [("block", "A"), ("block", "B")]

    @pytest.mark.asyncio
    async def test_dmp_to_unknown_parachain(self, relay_config):
        sender, receiver = _pair([])
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        with pytest.raises(ChopsticksXcmError) as exc_info:
            await orchestrator.send_dmp(9999, [{"sentAt": 1, "msg": "0x00"}])
        assert exc_info.value.para_id == 9999
        assert exc_info.value.message_type == "dmp"

    @pytest.mark.asyncio
    async def test_hrmp_targets_receiver(self, relay_config):
        calls = []
        sender, receiver = _pair([])

        async def record(params=None):
            calls.append(params)
            return BlockRef("0x1", 1)

        receiver.client.new_block = record
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        await orchestrator.send_hrmp(2000, 2004, [{"sentAt": 1, "data": "0x01"}])

        assert calls == [{"hrmp": {"2000": [{"sentAt": 1, "data": "0x01"}]}}]

    @pytest.mark.asyncio
    async def test_set_storage_shapes_values(self, relay_config):
        log = []
        sender, receiver = _pair(log)
        orchestrator = MultiChainOrchestrator(sender, [receiver], relay_config)

        await orchestrator.set_storage(sender, "System", "Account", [[["0xabc"], {"data": {"free": 1}}]])

        assert log == [("set_storage", {"System": {"Account": [[["0xabc"], {"data": {"free": 1}}]]}})]


class TestLaunchConfig:
    def test_to_args(self):
        config = ChainLaunchConfig(
            name="moonbeam",
            endpoint="wss://wss.api.moonbeam.network",
            port=8001,
            para_id=2004,
            block=100,
            db="./db.sqlite",
        )
        assert config.to_args() == [
            "--endpoint=wss://wss.api.moonbeam.network",
            "--port=8001",
            "--build-block-mode=Manual",
            "--block=100",
            "--db=./db.sqlite",
        ]

    def test_presets(self):
        polkadot = polkadot_moonbeam_config()
        assert polkadot.relay.port == 8000
        assert polkadot.parachains[0].para_id == 2004
        assert polkadot.parachains[0].port == 8001

        kusama = kusama_moonriver_config(relay_port=9000, moonriver_port=9001)
        assert kusama.parachains[0].para_id == 2023
        assert kusama.relay.port == 9000


class FakeLauncher:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.launched = []
        self.killed = []

    async def launch(self, spec):
        if spec.name == self.fail_on:
            raise LaunchError(spec.command, spec.args, reason="npx not found")
        self.launched.append(spec)

    async def kill(self, name, reason=""):
        self.killed.append(name)


class TestLaunchMultiChain:
    """Launching and tearing down a set of forks."""

    @pytest.mark.asyncio
    async def test_launch_and_teardown_order(self, relay_config):
        launcher = FakeLauncher()
        clients = {}

        async def factory(endpoint):
            clients[endpoint] = FakeChain(endpoint, [])
            return clients[endpoint]

        orchestrator = await launch_multi_chain(
            polkadot_moonbeam_config(), launcher, client_factory=factory, relay_config=relay_config
        )

        assert [s.name for s in launcher.launched] == ["polkadot", "moonbeam"]
        assert "--port=8000" in launcher.launched[0].args
        assert orchestrator.relay.name == "polkadot"
        assert orchestrator.parachain(2004).endpoint == "ws://127.0.0.1:8001"

        await orchestrator.teardown()

        assert launcher.killed == ["moonbeam", "polkadot"]
        assert all(c.closed for c in clients.values())

    @pytest.mark.asyncio
    async def test_failed_launch_cleans_up(self, relay_config):
        launcher = FakeLauncher(fail_on="moonbeam")
        clients = []

        async def factory(endpoint):
            client = FakeChain(endpoint, [])
            clients.append(client)
            return client

        with pytest.raises(ChopsticksSetupError):
            await launch_multi_chain(
                polkadot_moonbeam_config(), launcher, client_factory=factory, relay_config=relay_config
            )

        assert launcher.killed == ["polkadot"]
        assert all(c.closed for c in clients)
