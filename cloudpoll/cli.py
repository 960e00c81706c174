"""
Command line interface for cloud polling projects.

    cloudpoll new <project>
    cloudpoll add <project> <box|dropbox|googledrive>
    cloudpoll poll <project> [--once] [--interval SECONDS]
    cloudpoll reset <project>
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import List, Optional

from cloudpoll.core.config import PollerSettings, get_settings
from cloudpoll.core.position_store import JsonFilePositionStore
from cloudpoll.core.project import AccountConfig, PollingProject, ProjectConfig, ProjectConfigError
from cloudpoll.handlers.filesystem import DeleteHandler, DownloadHandler, LocalSyncFolder, MakedirHandler
from cloudpoll.handlers.index import IndexNotifier, NullIndexNotifier, SolrIndexNotifier
from cloudpoll.providers.base import AccountType, CloudProviderClient
from cloudpoll.providers.registry import create_client, create_feed
from cloudpoll.sync.normalizer import ChangeNormalizer
from cloudpoll.sync.poll_cycle import CycleResult
from cloudpoll.sync.router import ActionRouter
from cloudpoll.sync.scheduler import PolledAccount, PollScheduler

logger = logging.getLogger(__name__)


@dataclass
class PollRuntime:
    """Objects that live for one `poll` invocation."""
    scheduler: PollScheduler
    clients: List[CloudProviderClient] = field(default_factory=list)
    notifier: IndexNotifier = field(default_factory=NullIndexNotifier)

    async def close(self) -> None:
        for client in self.clients:
            await client.close()
        await self.notifier.close()


def build_runtime(
    project: PollingProject,
    config: ProjectConfig,
    accounts: List[AccountConfig],
    settings: PollerSettings,
) -> PollRuntime:
    """Wire clients, feeds, handlers and the scheduler for a project."""
    solr_url = config.solr_url or settings.solr_url
    notifier: IndexNotifier = SolrIndexNotifier(solr_url, settings.request_timeout_seconds) if solr_url else NullIndexNotifier()

    clients = {}
    polled = []
    for account in accounts:
        client = create_client(account.account_type, account.key, account.options, settings.request_timeout_seconds)
        clients[account.key] = client
        polled.append(PolledAccount(
            account_id=account.key,
            account_type=account.account_type,
            feed=create_feed(client, settings),
            normalizer=ChangeNormalizer(client, max_path_depth=settings.max_path_depth),
        ))

    sync_folder = LocalSyncFolder(config.sync_folder)
    download = DownloadHandler(sync_folder, clients, notifier)
    router = ActionRouter(
        download_handlers={account_type: download for account_type in AccountType},
        makedir_handler=MakedirHandler(sync_folder, notifier),
        delete_handler=DeleteHandler(sync_folder, notifier),
    )

    def record_poll(result: CycleResult) -> None:
        if result.committed:
            try:
                project.mark_polled(int(result.account_id))
            except (ProjectConfigError, OSError) as e:
                logger.warning(f"Could not record poll time of account {result.account_id}: {e}")

    scheduler = PollScheduler(
        polled,
        router,
        JsonFilePositionStore(project.positions_file),
        settings,
        on_result=record_poll,
    )
    return PollRuntime(scheduler=scheduler, clients=list(clients.values()), notifier=notifier)


# ==================== Commands ====================

async def cmd_new(project: PollingProject, args, settings: PollerSettings) -> int:
    if project.create():
        print(f"Project configuration created: {project.config_file}")
        print("Fill in the FILLHERE fields, then add accounts with 'cloudpoll add'")
    else:
        print(f"Project {project.name} already exists at {project.project_dir}")
    return 0


async def cmd_add(project: PollingProject, args, settings: PollerSettings) -> int:
    account = project.add_account(AccountType(args.account_type))
    print(f"Account {account.account_id} ({account.account_type.value}) created: "
          f"{project.account_file(account.account_id)}")
    print("Fill in the FILLHERE fields before polling")
    return 0


async def cmd_reset(project: PollingProject, args, settings: PollerSettings) -> int:
    store = JsonFilePositionStore(project.positions_file)
    reset_ids = await project.reset(store)
    print(f"Reset {len(reset_ids)} accounts of project {project.name}")
    return 0


async def cmd_poll(project: PollingProject, args, settings: PollerSettings) -> int:
    config = project.load()
    problems = project.validate_config(config)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        return 1

    accounts = project.load_accounts()
    if not accounts:
        print(f"No usable accounts in project {project.name}")
        return 1

    runtime = build_runtime(project, config, accounts, settings)
    try:
        if args.once:
            results = await runtime.scheduler.run_once()
            return 0 if all(r.ok for r in results) else 2

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, runtime.scheduler.stop)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform/loop; KeyboardInterrupt still ends the run
                pass
        await runtime.scheduler.run_forever(args.interval)
        return 0
    finally:
        await runtime.close()


COMMANDS = {
    "new": cmd_new,
    "add": cmd_add,
    "poll": cmd_poll,
    "reset": cmd_reset,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudpoll",
        description="Mirror Box, Dropbox and Google Drive accounts into a local folder",
    )
    parser.add_argument(
        "--configs", "-c",
        default=None,
        help="Directory holding project configurations (default: $CPOLL_CONFIGS)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    new = subparsers.add_parser("new", help="Create a new polling project")
    new.add_argument("project", help="Project name")

    add = subparsers.add_parser("add", help="Add a cloud account to a project")
    add.add_argument("project", help="Project name")
    add.add_argument("account_type", choices=[t.value for t in AccountType], help="Cloud provider")

    poll = subparsers.add_parser("poll", help="Poll every account of a project")
    poll.add_argument("project", help="Project name")
    poll.add_argument("--once", action="store_true", help="Run a single polling round and exit")
    poll.add_argument("--interval", type=float, default=None, help="Seconds between polling rounds")

    reset = subparsers.add_parser("reset", help="Reset every account to its first sync")
    reset.add_argument("project", help="Project name")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function for the command line."""
    args = build_parser().parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    settings = get_settings()
    project = PollingProject(args.project, args.configs or settings.configs)

    try:
        return asyncio.run(COMMANDS[args.command](project, args, settings))
    except ProjectConfigError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nPolling interrupted by user")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
