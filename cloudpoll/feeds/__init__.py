"""
Change Feed Shapes

One feed per provider poll shape:
- EventStreamFeed: stream position + listening window (Box)
- CursorLongPollFeed: cursor + long-poll/continue (Dropbox)
- PageTokenFeed: change list + page tokens (Google Drive)
"""

from cloudpoll.feeds.event_stream import EventStreamFeed, EventStreamTransport, EventChunk
from cloudpoll.feeds.cursor_longpoll import CursorLongPollFeed, CursorTransport, ListPage, LongpollResult
from cloudpoll.feeds.page_token import PageTokenFeed, PageTokenTransport, FilesPage, ChangesPage

__all__ = [
    "EventStreamFeed",
    "EventStreamTransport",
    "EventChunk",
    "CursorLongPollFeed",
    "CursorTransport",
    "ListPage",
    "LongpollResult",
    "PageTokenFeed",
    "PageTokenTransport",
    "FilesPage",
    "ChangesPage",
]
