"""
Track status broadcaster.

Manages per-topic subscriber queues and pushes TrackEvents to connected SSE
clients.  Every event is published to the track's own topic (its id) and to
the shared ``ALL_TRACKS_TOPIC``.

Architecture:
    track_repository (after commit) → publish(event) → TrackBroadcaster → SSE clients

Delivery is best-effort and at-most-once: there is no history and no replay.
A client that reconnects must re-read the track (GET /tracks/{id}) to
reconcile; the database is the source of truth, the broadcast only an
optimisation over polling.
"""

from __future__ import annotations

import asyncio
import logging

from melodymaker.models.tracks import TrackEvent

logger = logging.getLogger(__name__)

ALL_TRACKS_TOPIC = "tracks"

_QUEUE_MAXSIZE = 256


class TrackBroadcaster:
    """
    Manages live subscriptions for track status events.

    Each topic has a list of subscriber queues. When an event is published,
    it's pushed to every queue of the track's topic and of the shared topic.
    """

    def __init__(self) -> None:
        # topic -> list of subscriber queues
        self._subscribers: dict[str, list[asyncio.Queue[TrackEvent | None]]] = {}

    def publish(self, event: TrackEvent) -> int:
        """
        Push an event to all subscribers of its track and of the shared topic.

        Never blocks: a full subscriber queue drops the event for that
        subscriber only.  Returns the number of queues that received it.
        """
        delivered = 0
        targets = [event.track_id, ALL_TRACKS_TOPIC]
        for topic in targets:
            for queue in self._subscribers.get(topic, []):
                try:
                    queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(
                        f"⚠️ SSE queue full for topic {topic[:8]}, dropping {event.status} event"
                    )

        logger.debug(
            f"Published {event.status} for track {event.track_id[:8]} to {delivered} subscribers"
        )
        return delivered

    def subscribe(self, topic: str = ALL_TRACKS_TOPIC) -> asyncio.Queue[TrackEvent | None]:
        """
        Subscribe to events for a track id (or the shared topic).

        Returns a queue that will receive TrackEvent objects published after
        this call.  A None sentinel signals end-of-stream.
        """
        queue: asyncio.Queue[TrackEvent | None] = asyncio.Queue(maxsize=_QUEUE_MAXSIZE)
        self._subscribers.setdefault(topic, []).append(queue)
        logger.debug(f"New SSE subscriber for {topic[:8]}")
        return queue

    def unsubscribe(
        self,
        topic: str,
        queue: asyncio.Queue[TrackEvent | None],
    ) -> None:
        """Remove a subscriber queue."""
        subscribers = self._subscribers.get(topic, [])
        if queue in subscribers:
            subscribers.remove(queue)

        # Clean up empty subscriber lists
        if not subscribers and topic in self._subscribers:
            del self._subscribers[topic]

    def close_topic(self, topic: str) -> int:
        """
        Signal end-of-stream to all subscribers of a topic.

        Sends a None sentinel to each queue, then removes all subscribers.  A
        full queue loses its oldest pending event so the sentinel always fits.
        Returns the number of subscribers closed.
        """
        queues = self._subscribers.pop(topic, [])
        for queue in queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        return len(queues)

    def close_all(self) -> int:
        """End every open stream (server shutdown).  Returns subscribers closed."""
        closed = sum(self.close_topic(topic) for topic in list(self._subscribers))
        if closed:
            logger.info(f"Closed {closed} SSE subscribers")
        return closed

    def subscriber_count(self, topic: str) -> int:
        """Number of live subscribers on a topic."""
        return len(self._subscribers.get(topic, []))

    def clear(self) -> None:
        """Clear all state (for testing)."""
        self._subscribers.clear()

    @property
    def active_streams(self) -> int:
        """Number of topics with active subscribers."""
        return sum(1 for subs in self._subscribers.values() if subs)


# Singleton instance
_broadcaster: TrackBroadcaster | None = None


def get_track_broadcaster() -> TrackBroadcaster:
    """Get the singleton TrackBroadcaster instance."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = TrackBroadcaster()
    return _broadcaster


def reset_track_broadcaster() -> None:
    """Reset the singleton (for testing)."""
    global _broadcaster
    if _broadcaster is not None:
        _broadcaster.clear()
    _broadcaster = None
