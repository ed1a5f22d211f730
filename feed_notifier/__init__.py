"""
Feed Notifier - Poll a syndication feed and push a notification per new item.

A Python application that watches a single RSS/Atom feed, remembers every
item it has already seen and sends a Pushover (or Telegram) notification
for each newly published entry.
"""

__version__ = "1.0.0"
