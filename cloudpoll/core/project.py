"""Polling project management.

A polling project lives in its own configuration directory:

    <configs>/<project>/<project>.yaml     project settings (sync folder, solr)
    <configs>/<project>/accts/acct<N>.yaml one file per cloud account
    <configs>/<project>/positions.json     committed poll positions

New files are written from templates with FILLHERE placeholders that the
user has to replace before the project or account is usable.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml
from pydantic import BaseModel, Field, ValidationError

from cloudpoll.providers.base import AccountType

logger = logging.getLogger(__name__)

PLACEHOLDER = "FILLHERE"
ACCOUNT_FILE_PATTERN = re.compile(r"^acct(\d+)\.yaml$")

# Account option templates per account type
ACCOUNT_TEMPLATES: Dict[AccountType, Dict[str, Any]] = {
    AccountType.BOX: {
        "access_token": PLACEHOLDER,
        "root_folder_id": "0",
        "stream_type": "all",
    },
    AccountType.DROPBOX: {
        "access_token": PLACEHOLDER,
        "poll_folder": "",
    },
    AccountType.GOOGLE_DRIVE: {
        "access_token": PLACEHOLDER,
    },
}


class ProjectConfig(BaseModel):
    """Configuration for a polling project."""

    name: str = Field(..., description="Project name")
    description: str = Field(default="", description="Project description")
    sync_folder: str = Field(default=PLACEHOLDER, description="Local folder mirrored from every account")
    solr_url: Optional[str] = Field(default=None, description="Solr core receiving index updates")


class AccountConfig(BaseModel):
    """Configuration for one cloud account of a project."""

    account_id: int = Field(..., description="Account id, unique within the project")
    account_type: AccountType = Field(..., description="Cloud provider of this account")
    enabled: bool = Field(default=True, description="Whether the account is polled")
    options: Dict[str, Any] = Field(default_factory=dict, description="Provider credentials and options")
    last_poll: Optional[str] = Field(default=None, description="ISO timestamp of the last committed poll")

    @property
    def key(self) -> str:
        """Account id as used by position stores and sync folders."""
        return str(self.account_id)


class ProjectConfigError(Exception):
    """Project configuration is missing or unreadable."""
    pass


def find_placeholders(data: Any, prefix: str = "") -> List[str]:
    """Return the dotted keys still holding the FILLHERE placeholder."""
    found = []
    if isinstance(data, dict):
        for key, value in data.items():
            found.extend(find_placeholders(value, f"{prefix}{key}."))
    elif isinstance(data, list):
        for index, value in enumerate(data):
            found.extend(find_placeholders(value, f"{prefix}{index}."))
    elif data == PLACEHOLDER:
        found.append(prefix.rstrip("."))
    return found


class PollingProject:
    """Reads and writes the configuration tree of one polling project."""

    def __init__(self, name: str, configs_dir: str):
        """
        Initialize project paths.

        Args:
            name: Project name (also the directory and file stem)
            configs_dir: Directory holding all project directories
        """
        self.name = name
        self.project_dir = Path(configs_dir) / name
        self.config_file = self.project_dir / f"{name}.yaml"
        self.accounts_dir = self.project_dir / "accts"
        self.positions_file = self.project_dir / "positions.json"

    # ==================== Project ====================

    def create(self) -> bool:
        """
        Create the directory layout and a project template.

        Returns:
            True if a new template was written, False if one already existed
        """
        self.accounts_dir.mkdir(parents=True, exist_ok=True)
        if self.config_file.exists():
            logger.info(f"Project configuration already exists: {self.config_file}")
            return False

        self._write_yaml(self.config_file, ProjectConfig(name=self.name).model_dump())
        logger.info(f"Created project template {self.config_file}, fill in the {PLACEHOLDER} fields")
        return True

    def load(self) -> ProjectConfig:
        """Load the project configuration."""
        data = self._read_yaml(self.config_file)
        try:
            return ProjectConfig(**data)
        except ValidationError as e:
            raise ProjectConfigError(f"Invalid project configuration {self.config_file}: {e}") from e

    def validate_config(self, config: ProjectConfig) -> List[str]:
        """Return a list of problems that keep the project from polling."""
        problems = [f"{key} is not filled in" for key in find_placeholders(config.model_dump())]
        if config.sync_folder != PLACEHOLDER and not Path(config.sync_folder).is_dir():
            problems.append(f"sync folder {config.sync_folder} does not exist")
        return problems

    # ==================== Accounts ====================

    def account_file(self, account_id: int) -> Path:
        return self.accounts_dir / f"acct{account_id}.yaml"

    def account_ids(self) -> List[int]:
        """Get all account ids from the accounts directory."""
        if not self.accounts_dir.exists():
            return []

        ids = []
        for path in self.accounts_dir.iterdir():
            match = ACCOUNT_FILE_PATTERN.match(path.name)
            if match:
                ids.append(int(match.group(1)))
        return sorted(ids)

    def add_account(self, account_type: AccountType) -> AccountConfig:
        """
        Create an account template with the next free id.

        Args:
            account_type: Provider of the new account

        Returns:
            The templated account configuration
        """
        if not self.project_dir.exists():
            raise ProjectConfigError(f"Project {self.name} does not exist, run 'new' first")

        self.accounts_dir.mkdir(parents=True, exist_ok=True)
        ids = self.account_ids()
        account = AccountConfig(
            account_id=(max(ids) + 1) if ids else 1,
            account_type=account_type,
            options=dict(ACCOUNT_TEMPLATES[account_type]),
        )
        self.save_account(account)
        logger.info(
            f"Created {account_type.value} account template {self.account_file(account.account_id)}, "
            f"fill in the {PLACEHOLDER} fields"
        )
        return account

    def load_account(self, account_id: int) -> AccountConfig:
        path = self.account_file(account_id)
        data = self._read_yaml(path)
        data.setdefault("account_id", account_id)
        try:
            return AccountConfig(**data)
        except ValidationError as e:
            raise ProjectConfigError(f"Invalid account configuration {path}: {e}") from e

    def save_account(self, account: AccountConfig) -> None:
        self._write_yaml(self.account_file(account.account_id), account.model_dump(mode="json"))

    def account_problems(self, account: AccountConfig) -> List[str]:
        """Return a list of problems that keep an account from polling."""
        problems = [f"{key} is not filled in" for key in find_placeholders(account.options)]
        if not account.options.get("access_token"):
            problems.append("access_token is missing")
        return problems

    def load_accounts(self) -> List[AccountConfig]:
        """
        Load every enabled, valid account.

        Accounts with unreadable or incomplete configuration are reported
        and skipped; they never stop the others from loading.
        """
        accounts = []
        for account_id in self.account_ids():
            try:
                account = self.load_account(account_id)
            except ProjectConfigError as e:
                logger.error(f"Skipping account {account_id}: {e}")
                continue

            if not account.enabled:
                logger.info(f"Skipping disabled account {account_id}")
                continue

            problems = self.account_problems(account)
            if problems:
                logger.error(f"Skipping account {account_id}: {'; '.join(problems)}")
                continue

            accounts.append(account)
        return accounts

    def mark_polled(self, account_id: int, when: Optional[datetime] = None) -> None:
        """Record the time of the last committed poll of an account."""
        account = self.load_account(account_id)
        account.last_poll = (when or datetime.now(timezone.utc)).isoformat()
        self.save_account(account)

    async def reset(self, position_store) -> List[int]:
        """
        Reset every account to "never polled".

        Returns:
            Ids of the accounts that were reset
        """
        reset_ids = []
        for account_id in self.account_ids():
            try:
                account = self.load_account(account_id)
            except ProjectConfigError as e:
                logger.error(f"Cannot reset account {account_id}: {e}")
                continue

            await position_store.reset(account.key)
            account.last_poll = None
            self.save_account(account)
            reset_ids.append(account_id)

        logger.info(f"Reset {len(reset_ids)} accounts of project {self.name}")
        return reset_ids

    # ==================== YAML Helpers ====================

    @staticmethod
    def _read_yaml(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ProjectConfigError(f"Configuration file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ProjectConfigError(f"Failed to read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ProjectConfigError(f"Expected a mapping in {path}")
        return data

    @staticmethod
    def _write_yaml(path: Path, data: Dict[str, Any]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
