"""
Puppet Bridge

Runs one relay engine per identity pair behind a single application service.

Responsibilities:
1. Log in every puppet and start its adapter
2. Accept homeserver transactions and feed their events to each engine, in order
3. Answer the homeserver's user queries for ghosts
"""

import asyncio
import importlib
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

import aiohttp
import uvicorn

from src.adapters.base import ThirdPartyAdapter
from src.api.app import create_app
from src.core.config import BridgeConfig, ConfigurationError, IdentityPair, PairConfig, Registration
from src.core.relay import MessageRelayEngine
from src.core.remote_user_store import RemoteUserStore
from src.matrix.appservice import AppServiceIntents
from src.matrix.puppet import PuppetLoginError, PuppetSession
from src.models.database import init_database
from src.models.remote_user import RemoteUserDB

logger = logging.getLogger("puppet_bridge.bridge")

AdapterFactory = Callable[[MessageRelayEngine, IdentityPair], ThirdPartyAdapter]

# Transaction IDs remembered for idempotent redelivery
MAX_REMEMBERED_TRANSACTIONS = 1000


class BridgeStartupError(Exception):
    """Raised when the bridge cannot start; the process should exit"""
    pass


def load_adapter_factory(path: str) -> AdapterFactory:
    """Import an adapter factory given as 'package.module:callable'"""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Adapter must be given as module:factory, got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import adapter module {module_name}: {e}")
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"Adapter module {module_name} has no callable {attr}")
    return factory


@dataclass
class PairRuntime:
    pair: IdentityPair
    config: PairConfig
    puppet: PuppetSession
    engine: MessageRelayEngine
    adapter: ThirdPartyAdapter
    # Matrix events waiting for this pair's engine
    queue: "asyncio.Queue[Dict[str, Any]]" = field(default_factory=asyncio.Queue)


class PuppetBridgeApp:
    def __init__(
        self,
        config: BridgeConfig,
        registration: Registration,
        adapter_factory: AdapterFactory,
        config_path: Optional[str] = None
    ):
        self.config = config
        self.registration = registration
        self.adapter_factory = adapter_factory
        self.config_path = config_path
        self.pairs: Dict[str, PairRuntime] = {}
        self.intents: Optional[AppServiceIntents] = None
        self._transactions: "OrderedDict[str, None]" = OrderedDict()
        self._session: Optional[aiohttp.ClientSession] = None
        self._tasks: List[asyncio.Task] = []
        self._reports: Set[asyncio.Task] = set()

    @property
    def hs_token(self) -> str:
        return self.registration.hs_token

    async def start(self) -> None:
        if not self.config.identity_pairs:
            raise BridgeStartupError("No identity pairs configured")

        init_database(self.config.database_url)
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        self._session = aiohttp.ClientSession(timeout=timeout)
        self.intents = AppServiceIntents(
            self.config.homeserver_url,
            self.registration.as_token,
            self.config.bot_user_id,
            session=self._session,
            timeout=timeout
        )

        for pair in self.config.identity_pairs:
            await self._start_pair(pair, timeout)

        for runtime in self.pairs.values():
            self._spawn(self._pair_worker(runtime), f"matrix-events-{runtime.pair.id}", runtime)
            self._spawn(runtime.puppet.run(), f"puppet-sync-{runtime.pair.id}", runtime)
        logger.info(f"Bridge started with {len(self.pairs)} identity pairs")

    async def _start_pair(self, pair: IdentityPair, timeout: aiohttp.ClientTimeout) -> None:
        pair_config = self.config.for_pair(pair)
        puppet = PuppetSession(
            self.config.homeserver_url,
            self.config.puppet_user_id(pair),
            pair.matrix_puppet,
            pair.id,
            config_path=self.config_path
        )
        try:
            await puppet.start()
        except PuppetLoginError as e:
            raise BridgeStartupError(str(e)) from e

        engine = MessageRelayEngine(
            pair_config,
            puppet.intent(self._session, timeout),
            self.intents,
            RemoteUserStore(pair.id, RemoteUserDB(self.config.database_url)),
            session=self._session
        )
        adapter = self.adapter_factory(engine, pair)
        engine.set_adapter(adapter)
        puppet.on_read_receipt(engine.handle_puppet_read_receipt)

        try:
            await adapter.start_client()
        except Exception as e:
            raise BridgeStartupError(f"Adapter for identity pair {pair.id} failed to start: {e}") from e

        self.pairs[pair.id] = PairRuntime(pair, pair_config, puppet, engine, adapter)
        logger.info(f"Identity pair {pair.id} ready ({puppet.user_id} <-> {adapter.service_name})")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str, runtime: Optional[PairRuntime] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(lambda finished: self._task_done(finished, runtime))
        self._tasks.append(task)
        return task

    def _task_done(self, task: asyncio.Task, runtime: Optional[PairRuntime]) -> None:
        """Long-running tasks only end on shutdown; anything else is reported"""
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            logger.warning(f"Task {task.get_name()} exited")
            return
        logger.error(f"Task {task.get_name()} crashed: {error}", exc_info=error)
        if runtime is not None:
            report = asyncio.create_task(runtime.engine.report_status(f"{task.get_name()} crashed:", error))
            self._reports.add(report)
            report.add_done_callback(self._reports.discard)

    def accept_transaction(self, txn_id: str, events: List[Dict[str, Any]]) -> bool:
        """Queue the events of a transaction for every pair; False if the transaction was already seen"""
        if txn_id in self._transactions:
            logger.debug(f"Transaction {txn_id} already processed")
            return False
        self._transactions[txn_id] = None
        while len(self._transactions) > MAX_REMEMBERED_TRANSACTIONS:
            self._transactions.popitem(last=False)
        # Each engine only relays its own puppet's events
        for runtime in self.pairs.values():
            for event in events:
                runtime.queue.put_nowait(event)
        logger.debug(f"Queued {len(events)} events from transaction {txn_id}")
        return True

    async def _pair_worker(self, runtime: PairRuntime) -> None:
        while True:
            event = await runtime.queue.get()
            try:
                await runtime.engine.handle_matrix_event(event)
            except Exception as e:
                logger.error(f"Error handling event {event.get('event_id')} for {runtime.pair.id}: {e}", exc_info=True)
            finally:
                runtime.queue.task_done()

    async def query_user(self, user_id: str) -> bool:
        """Homeserver asks whether a user in our namespace exists; register it if it belongs to a pair"""
        for runtime in self.pairs.values():
            if runtime.engine.mapper.is_ghost(user_id):
                await self.intents.ghost(user_id)
                return True
        return False

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.pairs else "starting",
            "identity_pairs": sorted(self.pairs),
            "queued_events": sum(runtime.queue.qsize() for runtime in self.pairs.values()),
        }

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await asyncio.gather(*self._reports, return_exceptions=True)
        for runtime in self.pairs.values():
            try:
                await runtime.adapter.stop_client()
            except Exception as e:
                logger.warning(f"Adapter for {runtime.pair.id} did not stop cleanly: {e}")
            await runtime.puppet.close()
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Bridge stopped")

    async def serve(self, host: str = "0.0.0.0") -> None:
        try:
            await self.start()
            server = uvicorn.Server(uvicorn.Config(create_app(self), host=host, port=self.config.port, log_level="info"))
            await server.serve()
        finally:
            await self.stop()
