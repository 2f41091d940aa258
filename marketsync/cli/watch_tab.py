# marketsync/cli/watch_tab.py
import asyncio
import logging
import click

from marketsync.core.config import get_settings
from marketsync.core.exceptions import SharedStoreError
from marketsync.core.logging_config import configure_logging
from marketsync.integrations.stores.relay import RelaySharedStore
from marketsync.services.sync.coordinator import CrossTabCoordinator, SyncState

logger = logging.getLogger(__name__)


@click.command()
@click.option('--relay-url', default=None, help='Shared store relay websocket URL (defaults to RELAY_URL)')
@click.option('--request-sync', is_flag=True, help='Ask the current leader for a cache refresh after joining')
@click.option('--duration', type=float, default=None, help='Seconds to stay connected (default: until interrupted)')
def watch_tab(relay_url, request_sync, duration):
    """Join the relay as a tab and log its sync state"""
    configure_logging()
    settings = get_settings()
    url = relay_url or settings.RELAY_URL

    def on_state_change(state: SyncState):
        click.echo(
            f"leader={state.is_leader} tabs={state.active_tab_count} "
            f"last_sync={state.last_sync_timestamp.isoformat() if state.last_sync_timestamp else '-'}"
        )

    async def _watch():
        async with RelaySharedStore(url) as store:
            coordinator = CrossTabCoordinator.from_settings(store, on_state_change=on_state_change)
            async with coordinator:
                click.echo(f"Joined {url} as {coordinator.tab_id}")
                if request_sync:
                    await coordinator.request_sync()
                if duration is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(duration)

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        click.echo("Stopped")
    except SharedStoreError as e:
        raise click.ClickException(str(e))

if __name__ == "__main__":
    watch_tab()
