"""
Token provider backed by a JSON file kept up to date by the connection service.

File format::

    {
        "acc-1": {"access_token": "APP_USR-...", "seller_id": "123456"},
        "acc-2": {"access_token": "APP_USR-..."}
    }
"""

import json
from pathlib import Path

from loguru import logger

from marketsync.enrichment.types import AccountCredentials
from marketsync.services.errors import UnauthorizedError
from marketsync.settings import global_settings


class FileTokenProvider:
    """
    Reads credentials on every call so rotated tokens are picked up at once.

    Raises UnauthorizedError for accounts without a usable token.
    """

    SERVICE_ID = "token_provider"

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path or global_settings.tokens_file)

    def _load(self) -> dict[str, dict]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning(f"Token file {self.path} not found")
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read token file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def account_ids(self) -> list[str]:
        return sorted(self._load())

    async def __call__(self, account_id: str) -> AccountCredentials:
        entry = self._load().get(account_id) or {}
        token = entry.get("access_token")
        if not token:
            raise UnauthorizedError(
                f"No access token for account {account_id}",
                service_id=self.SERVICE_ID,
                status_code=401,
                account_id=account_id,
            )
        return AccountCredentials(
            account_id=account_id,
            access_token=token,
            seller_id=entry.get("seller_id"),
        )
