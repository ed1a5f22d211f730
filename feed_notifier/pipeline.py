"""
Concurrent notification pipeline.

Three stages connected by asyncio queues::

    FeedPoller -> item queue -> DedupCoordinator -> delivery queue -> DeliveryWorker(s)

Every stage watches one shared cancellation event and returns once it is
set. NotificationPipeline wires the stages together, turns SIGINT/SIGTERM
into that event and waits for every stage to finish.

Shutdown is best-effort: a notification still waiting for room in the
delivery queue, or still queued when the workers stop, is abandoned with a
warning. So are received items the dedup stage has not processed yet.
"""

import asyncio
import logging
import signal
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Protocol, TypeVar

from feed_notifier.models import DeliveryRequest, FeedItem, TaggedItem
from feed_notifier.notifier import DeliveryError, Notifier
from feed_notifier.rss_parser import FeedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 120
DEFAULT_DELIVERY_QUEUE_SIZE = 100


class FeedSource(Protocol):
    """Anything that can download and parse a feed."""

    async def fetch(self, url: str) -> bytes: ...

    def parse(self, content: bytes) -> list[FeedItem]: ...


async def next_or_cancel(queue: asyncio.Queue[T], cancel: asyncio.Event) -> T | None:
    """
    Wait for the next queue item or for cancellation, whichever comes first.

    Parameters
    ----------
    queue : asyncio.Queue
        Queue to read from.
    cancel : asyncio.Event
        Shared cancellation event.

    Returns
    -------
    T | None
        The next item, or None once cancellation is set. An item already
        taken off the queue is always returned.
    """
    if cancel.is_set():
        return None
    if not queue.empty():
        return queue.get_nowait()

    get_task = asyncio.ensure_future(queue.get())
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_task.cancel()
        if not get_task.done():
            get_task.cancel()

    if get_task.done() and not get_task.cancelled():
        return get_task.result()
    return None


async def put_or_cancel(queue: asyncio.Queue[T], item: T, cancel: asyncio.Event) -> bool:
    """
    Put an item on a queue, waiting for room unless cancellation is set.

    Returns
    -------
    bool
        True if the item was enqueued.
    """
    if cancel.is_set():
        return False
    try:
        queue.put_nowait(item)
        return True
    except asyncio.QueueFull:
        pass

    put_task = asyncio.ensure_future(queue.put(item))
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({put_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_task.cancel()
        if not put_task.done():
            put_task.cancel()

    return put_task.done() and not put_task.cancelled()


def drain(queue: asyncio.Queue) -> int:
    """
    Empty a queue without waiting.

    Returns
    -------
    int
        Number of items removed.
    """
    dropped = 0
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return dropped
        queue.task_done()
        dropped += 1


class FeedPoller:
    """
    Periodically fetch the feed and emit its items tagged with a cycle number.

    The cycle counter only advances after a successful fetch and parse, so a
    failing first poll is retried as the bootstrap cycle.
    """

    def __init__(
        self,
        source: FeedSource,
        url: str,
        items: asyncio.Queue[TaggedItem],
        cancel: asyncio.Event,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.source = source
        self.url = url
        self.items = items
        self.cancel = cancel
        self.interval = interval
        self.cycle = 0

    async def poll_once(self) -> int:
        """
        Run one fetch-parse-emit cycle.

        Returns
        -------
        int
            Number of items put on the item queue.
        """
        logger.debug("Checking %s for new items (cycle %d)", self.url, self.cycle)

        try:
            content = await self.source.fetch(self.url)
            items = self.source.parse(content)
        except asyncio.CancelledError:
            raise
        except FeedError as e:
            logger.error("Skipping poll of %s: %s", self.url, e)
            return 0
        except Exception as e:
            logger.error("Error checking feed %s: %s", self.url, e)
            return 0

        logger.debug("Parsed %d items from %s", len(items), self.url)

        emitted = 0
        for item in items:
            if not await put_or_cancel(self.items, TaggedItem(item, self.cycle), self.cancel):
                logger.warning("Shutdown during poll, %d items not emitted", len(items) - emitted)
                return emitted
            emitted += 1

        self.cycle += 1
        return emitted

    async def _wait_for_tick(self, deadline: float) -> bool:
        """Sleep until ``deadline`` (loop time); return True if cancelled meanwhile."""
        if self.cancel.is_set():
            return True
        timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            await asyncio.wait_for(self.cancel.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> None:
        """Poll immediately, then on every interval tick until cancelled."""
        logger.info("Starting feed poller for %s (every %ss)", self.url, self.interval)
        loop = asyncio.get_running_loop()

        # Deadlines sit on a fixed grid from start, independent of poll duration
        deadline = loop.time()
        if not self.cancel.is_set():
            await self.poll_once()
        while True:
            deadline += self.interval
            now = loop.time()
            if deadline < now:
                logger.debug("Poll overran the interval, skipping missed ticks")
                deadline = now
            if await self._wait_for_tick(deadline):
                break
            await self.poll_once()

        logger.info("Feed poller stopped")


class DedupCoordinator:
    """
    Decide which tagged items are new and turn them into delivery requests.

    Owns the known-item set. Items from the bootstrap cycle only seed it;
    unknown items from later cycles are recorded and announced.
    """

    def __init__(
        self,
        items: asyncio.Queue[TaggedItem],
        deliveries: asyncio.Queue[DeliveryRequest],
        cancel: asyncio.Event,
        title: str = "feed-notifier",
    ):
        self.items = items
        self.deliveries = deliveries
        self.cancel = cancel
        self.title = title
        self._known: dict[str, FeedItem] = {}

    @property
    def known(self) -> Mapping[str, FeedItem]:
        """Read-only view of every identifier seen so far."""
        return MappingProxyType(self._known)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._known

    def __len__(self) -> int:
        return len(self._known)

    def process(self, tagged: TaggedItem) -> DeliveryRequest | None:
        """
        Record a tagged item and build a request if it is new.

        Parameters
        ----------
        tagged : TaggedItem
            Item with the cycle that produced it.

        Returns
        -------
        DeliveryRequest | None
            Request for a newly discovered item, None otherwise.
        """
        item = tagged.item

        if tagged.is_bootstrap:
            if item.identifier not in self._known:
                self._known[item.identifier] = item
                logger.debug("Adding item to known set: %s", item.title)
            return None

        if item.identifier in self._known:
            return None

        logger.info("New item found: %s", item.title)
        self._known[item.identifier] = item
        return DeliveryRequest.for_item(item, self.title)

    async def run(self) -> None:
        """Consume tagged items until cancelled."""
        logger.info("Starting dedup coordinator")

        while True:
            tagged = await next_or_cancel(self.items, self.cancel)
            if tagged is None:
                break

            try:
                request = self.process(tagged)
            except Exception as e:
                logger.error("Failed to process item %r: %s", tagged.item.identifier, e)
                continue

            if request is None:
                continue

            # Waits while the delivery queue is full
            if not await put_or_cancel(self.deliveries, request, self.cancel):
                logger.warning(
                    "Shutting down, notification for '%s' abandoned", tagged.item.title
                )

        dropped = drain(self.items)
        if dropped:
            logger.warning("Shutting down, %d received items abandoned unprocessed", dropped)
        logger.info("Dedup coordinator stopped with %d known items", len(self._known))


class DeliveryWorker:
    """Send delivery requests through every configured notifier."""

    def __init__(
        self,
        deliveries: asyncio.Queue[DeliveryRequest],
        notifiers: Sequence[Notifier],
        cancel: asyncio.Event,
        name: str = "delivery",
    ):
        self.deliveries = deliveries
        self.notifiers = notifiers
        self.cancel = cancel
        self.name = name

    async def deliver(self, request: DeliveryRequest) -> int:
        """
        Send one request. Failures are logged and not retried.

        Parameters
        ----------
        request : DeliveryRequest
            The notification to send.

        Returns
        -------
        int
            Number of notifiers that accepted the request.
        """
        sent = 0
        for notifier in self.notifiers:
            try:
                receipt = await notifier.send(request)
            except asyncio.CancelledError:
                raise
            except DeliveryError as e:
                logger.error("[%s] %s delivery failed: %s", self.name, notifier.name, e)
                continue
            except Exception as e:
                logger.error("[%s] %s unexpected delivery error: %s", self.name, notifier.name, e)
                continue

            logger.info(
                "[%s] Sent notification via %s (id=%s, remaining=%s, limit=%s)",
                self.name,
                notifier.name,
                receipt.delivery_id,
                receipt.remaining,
                receipt.limit,
            )
            sent += 1
        return sent

    async def run(self) -> None:
        """Consume delivery requests until cancelled."""
        logger.info("Starting %s worker", self.name)

        while True:
            request = await next_or_cancel(self.deliveries, self.cancel)
            if request is None:
                break
            try:
                await self.deliver(request)
            finally:
                self.deliveries.task_done()

        dropped = drain(self.deliveries)
        if dropped:
            logger.warning(
                "[%s] Shutting down, %d queued notifications abandoned", self.name, dropped
            )
        logger.info("%s worker stopped", self.name)


class NotificationPipeline:
    """
    Wire poller, dedup coordinator and delivery workers together.

    The stages share one cancellation event; ``shutdown`` sets it and
    ``run`` returns once every stage has observed it.
    """

    def __init__(
        self,
        source: FeedSource,
        feed_url: str,
        notifiers: Sequence[Notifier],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        title: str = "feed-notifier",
        item_queue_size: int = 0,
        delivery_queue_size: int = DEFAULT_DELIVERY_QUEUE_SIZE,
        delivery_workers: int = 1,
    ):
        """
        Build the queues and stages.

        Parameters
        ----------
        source : FeedSource
            Feed fetcher and parser.
        feed_url : str
            URL of the feed to poll.
        notifiers : Sequence[Notifier]
            Transports every new item is sent through.
        poll_interval : float
            Seconds between polls.
        title : str
            Notification title.
        item_queue_size : int
            Capacity of the item queue, 0 for unbounded.
        delivery_queue_size : int
            Capacity of the delivery queue.
        delivery_workers : int
            Number of delivery workers.
        """
        if delivery_workers < 1:
            raise ValueError("At least one delivery worker is required")

        self.cancel = asyncio.Event()
        self.items: asyncio.Queue[TaggedItem] = asyncio.Queue(maxsize=item_queue_size)
        self.deliveries: asyncio.Queue[DeliveryRequest] = asyncio.Queue(
            maxsize=delivery_queue_size
        )

        self.poller = FeedPoller(source, feed_url, self.items, self.cancel, poll_interval)
        self.dedup = DedupCoordinator(self.items, self.deliveries, self.cancel, title)
        self.workers = [
            DeliveryWorker(self.deliveries, notifiers, self.cancel, name=f"delivery-{i}")
            for i in range(delivery_workers)
        ]
        self._tasks: list[asyncio.Task] = []

    @property
    def cancelled(self) -> bool:
        """True once shutdown has been requested."""
        return self.cancel.is_set()

    def shutdown(self, reason: str = "shutdown requested") -> None:
        """
        Fire the cancellation event. Later calls do nothing.

        Parameters
        ----------
        reason : str
            Logged with the shutdown notice.
        """
        if self.cancel.is_set():
            return
        logger.info("Shutting down: %s", reason)
        self.cancel.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Call ``shutdown`` on SIGINT and SIGTERM.

        Parameters
        ----------
        loop : asyncio.AbstractEventLoop | None
            Loop to register with, defaults to the running loop.
        """
        loop = loop or asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown, f"received {sig.name}")
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                def handler(signum, frame):
                    reason = f"received {signal.Signals(signum).name}"
                    loop.call_soon_threadsafe(self.shutdown, reason)

                signal.signal(sig, handler)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Undo ``install_signal_handlers``."""
        loop = loop or asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    async def run(self) -> None:
        """
        Run every stage and return once all of them have stopped.

        If a stage dies unexpectedly the others are shut down and the
        error is re-raised.
        """
        self._tasks = [
            asyncio.create_task(self.poller.run(), name="poller"),
            asyncio.create_task(self.dedup.run(), name="dedup"),
        ]
        self._tasks += [
            asyncio.create_task(worker.run(), name=worker.name) for worker in self.workers
        ]
        logger.info("Pipeline started with %d delivery worker(s)", len(self.workers))

        try:
            done, pending = await asyncio.wait(
                self._tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            raise

        if pending:
            self.shutdown("a pipeline stage failed")
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        logger.info("Pipeline stopped")
