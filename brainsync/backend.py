"""
Backend factory.

Creates the local stores (record cache and outbox) and, when configured,
the remote store and calendar client from a StoreConfig.
"""

from typing import NamedTuple, Optional

from .calendar_client import CalendarProtocol, GoogleCalendarClient, NullCalendar
from .config import StoreConfig
from .local_store import LocalStore
from .outbox import Outbox
from .remote import HttpRemoteStore, RemoteStoreProtocol

LOCAL_DB = "local.db"
OUTBOX_DB = "outbox.db"


class StoreBundle(NamedTuple):
    """Local storage owned by one Notebook."""
    local: LocalStore
    outbox: Outbox


def create_stores(config: StoreConfig) -> StoreBundle:
    """Open the SQLite record cache and outbox in the store directory."""
    store_path = config.path
    return StoreBundle(
        local=LocalStore(store_path / LOCAL_DB),
        outbox=Outbox(
            store_path / OUTBOX_DB,
            backoff_base=config.sync.backoff_base,
            backoff_max=config.sync.backoff_max,
        ),
    )


def create_remote(config: StoreConfig, user_id: Optional[str] = None) -> RemoteStoreProtocol:
    """
    Create the remote store client for a user.

    Raises:
        ValueError: remote is not configured, or no user id is known
    """
    remote = config.remote
    if not remote.enabled:
        raise ValueError(
            "Remote store is not configured. Set [remote] api_url and api_key "
            "in brainsync.toml, or BRAINSYNC_API_URL and BRAINSYNC_API_KEY."
        )
    user_id = user_id or remote.user_id
    if not user_id:
        raise ValueError("No user id. Set [remote] user_id or BRAINSYNC_USER_ID.")
    return HttpRemoteStore(
        remote.api_url,
        remote.api_key,
        user_id,
        poll_interval=remote.poll_interval,
    )


def create_calendar(config: StoreConfig) -> CalendarProtocol:
    """Google Calendar client when enabled with a token, else a NullCalendar."""
    calendar = config.calendar
    if calendar.enabled and calendar.access_token:
        return GoogleCalendarClient(calendar.access_token, calendar_id=calendar.calendar_id)
    return NullCalendar()
