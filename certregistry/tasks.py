# certregistry/tasks.py
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from certregistry.crud import last_indexed_block, record_event
from certregistry.errors import RegistryError
from certregistry.settings import settings

log = logging.getLogger("tasks")

JOB_ID = "sync_ledger_events"


def sync_ledger_events(ledger, bind=None) -> int:
    """
    Replay contract events into the event index. The last indexed block is
    scanned again; already indexed events are skipped by record_event.
    """
    last = last_indexed_block(bind)
    from_block = settings.EVENT_SYNC_FROM_BLOCK if last is None else last
    log.info("Replaying registry events from block %s...", from_block)
    try:
        events = ledger.events_since(from_block)
    except RegistryError as e:
        log.warning("Event replay failed: %s", e.message)
        return 0

    stored = 0
    for event in events:
        if record_event(event, bind=bind) is not None:
            stored += 1
    if stored:
        log.info("Indexed %d new registry events", stored)
    return stored


scheduler = BackgroundScheduler()


def start_event_sync(ledger, bind=None):
    scheduler.add_job(
        sync_ledger_events,
        "interval",
        seconds=settings.EVENT_SYNC_SECONDS,
        args=[ledger],
        kwargs={"bind": bind},
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
    )
    if not scheduler.running:
        scheduler.start()


def stop_event_sync():
    if scheduler.running:
        scheduler.shutdown(wait=False)
