"""
Value types passed between the pipeline stages.

Feed items come out of the parser, get tagged with the poll cycle that
produced them, and new ones are turned into delivery requests.
"""

import html
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class FeedItem:
    """
    One entry read from the feed.

    Attributes
    ----------
    identifier : str
        Unique identifier supplied by the feed (guid/id, or the link).
    title : str
        Entry title.
    description : str
        Entry summary, may contain markup.
    link : str
        Entry URL.
    """

    identifier: str
    title: str = ""
    description: str = ""
    link: str = ""

    @classmethod
    def from_feedparser(cls, entry: Any) -> "FeedItem":
        """
        Create a FeedItem from a feedparser entry.

        Parameters
        ----------
        entry : Any
            A feedparser entry object.

        Returns
        -------
        FeedItem
            Normalized item.

        Raises
        ------
        ValueError
            If the entry has neither an id nor a link.
        """
        identifier = entry.get("id", "") or entry.get("link", "")
        if not identifier:
            raise ValueError("entry has no id or link")

        # Prefer the summary, RSS descriptions land there
        description = entry.get("summary", "") or ""
        if not description and entry.get("content"):
            description = entry.get("content")[0].get("value", "")

        return cls(
            identifier=identifier,
            title=entry.get("title", "") or "",
            description=description,
            link=entry.get("link", "") or "",
        )


@dataclass(frozen=True)
class TaggedItem:
    """A feed item annotated with the poll cycle that produced it."""

    item: FeedItem
    cycle: int

    def __post_init__(self) -> None:
        if self.cycle < 0:
            raise ValueError(f"cycle must be non-negative, got {self.cycle}")

    @property
    def is_bootstrap(self) -> bool:
        """True for items from the first successful poll."""
        return self.cycle == 0


@dataclass(frozen=True)
class DeliveryRequest:
    """
    A notification ready to hand to a transport.

    Attributes
    ----------
    title : str
        Notification title, constant per deployment.
    body : str
        HTML-flavored message text.
    url : str
        Destination URL, usually the item link.
    timestamp : datetime
        When the request was created (UTC).
    """

    title: str
    body: str
    url: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_item(cls, item: FeedItem, title: str) -> "DeliveryRequest":
        """
        Build the notification announcing a new feed item.

        Parameters
        ----------
        item : FeedItem
            The newly discovered item.
        title : str
            Notification title.

        Returns
        -------
        DeliveryRequest
            Request embedding the item title and description.
        """
        body = f"<b>New item:</b> {html.escape(item.title)}<br>\n{item.description}"
        return cls(title=title, body=body, url=item.link)


@dataclass(frozen=True)
class Receipt:
    """
    Outcome reported by a transport after a successful send.

    Attributes
    ----------
    delivery_id : str
        Provider identifier of the sent message.
    remaining : int | None
        Messages left in the current quota window, if reported.
    limit : int | None
        Size of the quota window, if reported.
    """

    delivery_id: str
    remaining: int | None = None
    limit: int | None = None
