"""
Message Router

Consumes inbound events from the session, classifies them, asks the
response policy what to do and hands the work to a small pool of workers.
The receive loop only classifies and enqueues; training, generation and
sending all happen on the workers so a slow reply never holds up the
next event.
"""

import asyncio
import logging
import random
import re
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..exceptions import EmptyModelError, GenerateError, PersistenceError
from ..utils.text_utils import normalize_message
from .events import EventKind, InboundEvent, StanzaType
from .model_store import ModelStore
from .policy import GLOBAL_SCOPE, EmitDecision, EmitReason, PolicyConfig, decide, detect_mention

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteJob:
    """One message's worth of work for the worker pool."""
    room_id: str
    kind: EventKind
    train_scopes: Tuple[str, ...]
    text: str
    sender: str
    decision: EmitDecision


class MessageRouter:
    """Routes inbound events to training and replies."""

    def __init__(
        self,
        session,
        store: ModelStore,
        policy_config: PolicyConfig,
        mention_pattern: Optional[str] = None,
        learn_from_direct: bool = False,
        default_nick: str = "markovbot",
        worker_count: int = 2,
        queue_size: int = 100,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.store = store
        self.policy_config = policy_config
        self.mention_pattern = re.compile(mention_pattern, re.IGNORECASE) if mention_pattern else None
        self.learn_from_direct = learn_from_direct
        self.default_nick = default_nick
        self.worker_count = max(1, worker_count)
        self.rng = rng or random.Random()
        self.clock = clock

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []
        # room_id -> fired key -> timestamp
        self._last_fired: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._presence: Dict[Tuple[str, str], str] = {}

        self.stats = {
            "received": 0,
            "ignored": 0,
            "queued": 0,
            "dropped": 0,
            "trained": 0,
            "train_failures": 0,
            "replied": 0,
            "reply_failures": 0,
        }

    def classify(self, event: InboundEvent) -> EventKind:
        if event.stanza_type == StanzaType.ERROR:
            return EventKind.ERROR
        if event.stanza_type == StanzaType.MEMBERSHIP:
            return EventKind.PRESENCE
        if self.session.membership_for(event.room_id) is not None:
            return EventKind.ROOM_MESSAGE
        if 0 < event.member_count <= 2:
            return EventKind.DIRECT_MESSAGE
        return EventKind.ROOM_MESSAGE

    async def route(self, event: InboundEvent) -> Optional[RouteJob]:
        """Classify one event and queue its work. Returns the queued job, if any."""
        self.stats["received"] += 1
        kind = self.classify(event)

        if kind == EventKind.ERROR:
            logger.warning(f"MessageRouter: Error event in {event.room_id} from {event.sender}: {event.error}")
            return None
        if kind == EventKind.PRESENCE:
            self._handle_presence(event)
            return None

        if event.sender == self.session.own_id:
            self.stats["ignored"] += 1
            return None
        text = normalize_message(event.body)
        if not text:
            self.stats["ignored"] += 1
            return None

        membership = self.session.membership_for(event.room_id)
        if kind == EventKind.ROOM_MESSAGE and membership is None:
            logger.debug(f"MessageRouter: Ignoring message from unconfigured room {event.room_id}")
            self.stats["ignored"] += 1
            return None

        if kind == EventKind.DIRECT_MESSAGE:
            nick = self.default_nick
            reply_scope = GLOBAL_SCOPE
            train_scopes: Tuple[str, ...] = (GLOBAL_SCOPE,) if self.learn_from_direct else ()
        else:
            nick = membership.nick
            reply_scope = membership.scopes[0] if membership.scopes else GLOBAL_SCOPE
            train_scopes = tuple(membership.scopes)

        is_mention, stripped = detect_mention(text, nick, self.session.own_id, self.mention_pattern)
        if not stripped and not is_mention:
            self.stats["ignored"] += 1
            return None

        last_fired = self._last_fired[event.room_id]
        now = self.clock()
        decision = decide(
            reply_scope,
            event.sender,
            stripped,
            kind == EventKind.DIRECT_MESSAGE,
            is_mention,
            own_id=self.session.own_id,
            config=self.policy_config,
            rng=self.rng,
            now=now,
            last_fired=last_fired,
        )

        # Commands and a bare nick addressed to the bot are not conversation
        if decision.reason == EmitReason.COMMAND or not stripped:
            train_scopes = ()

        job = RouteJob(event.room_id, kind, train_scopes, stripped, event.sender, decision)
        if not job.train_scopes and not decision.emit:
            return None

        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning(f"MessageRouter: Work queue full, dropping message from {event.sender} in {event.room_id}")
            return None

        if decision.emit and decision.fired_key:
            last_fired[decision.fired_key] = now
        self.stats["queued"] += 1
        return job

    def _handle_presence(self, event: InboundEvent) -> None:
        key = (event.room_id, event.state_key or event.sender)
        if self._presence.get(key) == event.membership:
            return
        self._presence[key] = event.membership
        logger.debug(f"MessageRouter: {key[1]} is now '{event.membership}' in {event.room_id}")

    def start(self) -> None:
        if self._workers:
            return
        for index in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(index), name=f"router-worker-{index}"))
        logger.info(f"MessageRouter: Started {self.worker_count} workers")

    async def stop(self, timeout: float = 5.0) -> None:
        """Let queued work finish for up to ``timeout`` seconds, then stop the workers."""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"MessageRouter: {self._queue.qsize()} jobs still queued at shutdown")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"MessageRouter: Stopped. Stats: {self.stats}")

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except Exception as e:
                logger.error(f"MessageRouter: Worker {index} failed on job from {job.room_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def process(self, job: RouteJob) -> None:
        """Train and reply for one job. Failures are logged, never raised."""
        training = asyncio.create_task(self._train(job)) if job.train_scopes else None
        try:
            if job.decision.emit:
                await self._reply(job)
        finally:
            if training is not None:
                await training

    async def _train(self, job: RouteJob) -> None:
        for scope in job.train_scopes:
            try:
                await self.store.train(scope, job.text, job.sender)
            except PersistenceError as e:
                self.stats["train_failures"] += 1
                logger.error(f"MessageRouter: Training dropped for scope '{scope}': {e}")
            else:
                self.stats["trained"] += 1

    async def _reply(self, job: RouteJob) -> None:
        decision = job.decision
        try:
            body = await self._compose(decision)
        except EmptyModelError as e:
            logger.debug(f"MessageRouter: No reply in {job.room_id}: {e}")
            return
        except GenerateError as e:
            self.stats["reply_failures"] += 1
            logger.warning(f"MessageRouter: Generation failed for {job.room_id}: {e}")
            return

        if not body.strip():
            return
        if await self.session.send(job.room_id, body):
            self.stats["replied"] += 1
            logger.info(f"MessageRouter: Replied in {job.room_id} ({decision.reason.value})")
        else:
            self.stats["reply_failures"] += 1

    async def _compose(self, decision: EmitDecision) -> str:
        if decision.canned_response:
            return decision.canned_response
        if decision.command == "words":
            return f"I know {self.store.word_count(decision.scope)} words!"
        return await self.store.generate(decision.scope, seed=decision.prompt or None)
