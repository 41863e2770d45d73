"""
Persisted deployment artifacts for one cluster.

Layout under ``<artifacts_dir>/<cluster>/``::

    program-ids.json
    wallets.json
    tokens.json
    assets.json
    markets.json
    test-accounts/test-account-<n>.json

Every write is atomic (temp file + os.replace). Reads are typed: a file
that is absent reads as None/empty, a file that exists but does not parse
or validate raises CorruptArtifactError. Stages read through an
ArtifactSnapshot and require what they depend on.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from omnideploy.errors import CorruptArtifactError, PreconditionMissingError
from omnideploy.keypairs import keypair_from_json, keypair_to_json
from omnideploy.models import DeployedMarket, ProgramIds, RegisteredAsset, TestAccount, TokenIds, WalletSet

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PROGRAM_IDS_FILE = "program-ids.json"
WALLETS_FILE = "wallets.json"
TOKENS_FILE = "tokens.json"
ASSETS_FILE = "assets.json"
MARKETS_FILE = "markets.json"
TEST_ACCOUNTS_DIR = "test-accounts"


def _merge_by(existing: List[M], incoming: List[M], key: Callable[[M], str]) -> List[M]:
    """Merge keyed records: incoming entries replace existing ones in place, new keys append."""
    merged: Dict[str, M] = {key(item): item for item in existing}
    for item in incoming:
        merged[key(item)] = item
    return list(merged.values())


class ArtifactStore:
    """Typed reads and atomic writes of one cluster's artifacts."""

    def __init__(self, root: Path, cluster: str):
        self.root = Path(root)
        self.cluster = cluster

    # ------------------------------------------------------------------
    # Raw file access
    # ------------------------------------------------------------------

    def path(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def _read_json(self, name: str) -> Optional[Any]:
        path = self.path(name)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CorruptArtifactError(
                f"Artifact {path} exists but is unreadable",
                path=str(path),
                reason=str(e),
            ) from e

    def _write_json(self, name: str, data: Any) -> Path:
        path = self.path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".json.tmp")
        try:
            with os.fdopen(temp_fd, "w") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug(f"Wrote {path}")
        return path

    def _parse(self, model: Type[M], data: Any, name: str) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise CorruptArtifactError(
                f"Artifact {self.path(name)} failed validation",
                path=str(self.path(name)),
                reason=str(e),
            ) from e

    def _parse_list(self, model: Type[M], name: str) -> List[M]:
        data = self._read_json(name)
        if data is None:
            return []
        if not isinstance(data, list):
            raise CorruptArtifactError(
                f"Artifact {self.path(name)} must hold a JSON array",
                path=str(self.path(name)),
                reason=f"got {type(data).__name__}",
            )
        return [self._parse(model, entry, name) for entry in data]

    # ------------------------------------------------------------------
    # Program ids
    # ------------------------------------------------------------------

    def program_ids(self) -> Optional[ProgramIds]:
        data = self._read_json(PROGRAM_IDS_FILE)
        if data is None:
            return None
        ids = self._parse(ProgramIds, data, PROGRAM_IDS_FILE)
        if ids.cluster != self.cluster:
            raise CorruptArtifactError(
                f"{self.path(PROGRAM_IDS_FILE)} was recorded for cluster {ids.cluster}, not {self.cluster}",
                path=str(self.path(PROGRAM_IDS_FILE)),
                reason="cluster mismatch",
            )
        return ids

    def put_program_ids(self, ids: ProgramIds) -> Path:
        if ids.cluster != self.cluster:
            raise ValueError(f"program ids for {ids.cluster} cannot be stored under {self.cluster}")
        return self._write_json(PROGRAM_IDS_FILE, ids.model_dump())

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def wallets(self) -> Optional[WalletSet]:
        data = self._read_json(WALLETS_FILE)
        if data is None:
            return None
        try:
            if not isinstance(data, dict):
                raise ValueError("expected an object keyed by role")
            return WalletSet(**{role: keypair_from_json(data[role]) for role in WalletSet.ROLES})
        except (KeyError, ValueError, TypeError) as e:
            raise CorruptArtifactError(
                f"Artifact {self.path(WALLETS_FILE)} does not hold a valid wallet set",
                path=str(self.path(WALLETS_FILE)),
                reason=f"{type(e).__name__}: {e}",
            ) from e

    def put_wallets(self, wallets: WalletSet) -> Path:
        """Persist the wallet set once. Existing wallets are never replaced."""
        if self.exists(WALLETS_FILE):
            raise FileExistsError(f"Refusing to overwrite {self.path(WALLETS_FILE)}")
        data = {role: keypair_to_json(getattr(wallets, role)) for role in WalletSet.ROLES}
        data.update({f"{role}_pubkey": str(pk) for role, pk in wallets.pubkeys().items()})
        return self._write_json(WALLETS_FILE, data)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def tokens(self) -> TokenIds:
        data = self._read_json(TOKENS_FILE)
        if data is None:
            return TokenIds()
        return self._parse(TokenIds, data, TOKENS_FILE)

    def update_tokens(self, **fields: str) -> TokenIds:
        tokens = self.tokens().model_copy(update=fields)
        tokens = self._parse(TokenIds, tokens.model_dump(), TOKENS_FILE)
        self._write_json(TOKENS_FILE, tokens.model_dump(exclude_none=True))
        return tokens

    # ------------------------------------------------------------------
    # Assets and markets
    # ------------------------------------------------------------------

    def assets(self) -> List[RegisteredAsset]:
        return self._parse_list(RegisteredAsset, ASSETS_FILE)

    def merge_assets(self, applied: List[RegisteredAsset]) -> List[RegisteredAsset]:
        merged = _merge_by(self.assets(), applied, key=lambda a: a.asset_id)
        self._write_json(ASSETS_FILE, [a.model_dump(mode="json") for a in merged])
        return merged

    def markets(self) -> List[DeployedMarket]:
        return self._parse_list(DeployedMarket, MARKETS_FILE)

    def merge_markets(self, deployed: List[DeployedMarket]) -> List[DeployedMarket]:
        merged = _merge_by(self.markets(), deployed, key=lambda m: m.symbol)
        self._write_json(MARKETS_FILE, [m.model_dump(mode="json") for m in merged])
        return merged

    # ------------------------------------------------------------------
    # Test accounts
    # ------------------------------------------------------------------

    @staticmethod
    def test_account_name(index: int) -> str:
        return f"{TEST_ACCOUNTS_DIR}/test-account-{index}.json"

    def test_account(self, index: int) -> Optional[TestAccount]:
        name = self.test_account_name(index)
        data = self._read_json(name)
        if data is None:
            return None
        account = self._parse(TestAccount, data, name)
        try:
            account.keypair()
        except ValueError as e:
            raise CorruptArtifactError(
                f"Artifact {self.path(name)} holds an inconsistent keypair",
                path=str(self.path(name)),
                reason=str(e),
            ) from e
        return account

    def put_test_account(self, index: int, account: TestAccount) -> Path:
        name = self.test_account_name(index)
        if self.exists(name):
            raise FileExistsError(f"Refusing to overwrite {self.path(name)}")
        return self._write_json(name, account.model_dump())

    # ------------------------------------------------------------------

    def snapshot(self) -> "ArtifactSnapshot":
        return ArtifactSnapshot(self)

    def inventory(self) -> Dict[str, bool]:
        """Which artifacts exist, for status output."""
        names = [PROGRAM_IDS_FILE, WALLETS_FILE, TOKENS_FILE, ASSETS_FILE, MARKETS_FILE]
        found = {name: self.exists(name) for name in names}
        accounts_dir = self.path(TEST_ACCOUNTS_DIR)
        found[TEST_ACCOUNTS_DIR] = accounts_dir.exists() and any(accounts_dir.glob("test-account-*.json"))
        return found


class ArtifactSnapshot:
    """Read view of the store taken at the start of a stage.

    Each artifact is read at most once, on first access, so a corrupt
    file only affects the stages that depend on it.
    """

    def __init__(self, store: ArtifactStore):
        self._store = store
        self._cache: Dict[str, Any] = {}

    @property
    def cluster(self) -> str:
        return self._store.cluster

    def _get(self, key: str, loader: Callable[[], Any]) -> Any:
        if key not in self._cache:
            self._cache[key] = loader()
        return self._cache[key]

    @property
    def program_ids(self) -> Optional[ProgramIds]:
        return self._get("program_ids", self._store.program_ids)

    @property
    def wallets(self) -> Optional[WalletSet]:
        return self._get("wallets", self._store.wallets)

    @property
    def tokens(self) -> TokenIds:
        return self._get("tokens", self._store.tokens)

    @property
    def assets(self) -> List[RegisteredAsset]:
        return self._get("assets", self._store.assets)

    @property
    def markets(self) -> List[DeployedMarket]:
        return self._get("markets", self._store.markets)

    def asset(self, asset_id: str) -> Optional[RegisteredAsset]:
        for asset in self.assets:
            if asset.asset_id == asset_id:
                return asset
        return None

    def market(self, symbol: str) -> Optional[DeployedMarket]:
        for market in self.markets:
            if market.symbol == symbol:
                return market
        return None

    # Requirements raise PreconditionMissingError naming the missing artifact

    def require_program_ids(self) -> ProgramIds:
        ids = self.program_ids
        if ids is None:
            raise PreconditionMissingError(
                f"No program ids recorded for {self.cluster}; run deploy-registry first",
                artifact=PROGRAM_IDS_FILE,
            )
        return ids

    def require_wallets(self) -> WalletSet:
        wallets = self.wallets
        if wallets is None:
            raise PreconditionMissingError(
                f"No wallet set recorded for {self.cluster}; run deploy-registry first",
                artifact=WALLETS_FILE,
            )
        return wallets

    def require_settlement_mint(self) -> str:
        mint = self.tokens.settlement_mint
        if not mint:
            raise PreconditionMissingError(
                f"No settlement mint recorded for {self.cluster}; run issue-settlement-token first",
                artifact=f"{TOKENS_FILE}:settlement_mint",
            )
        return mint

    def require_assets(self, asset_ids: List[str]) -> Dict[str, RegisteredAsset]:
        found = {}
        missing = []
        for asset_id in asset_ids:
            asset = self.asset(asset_id)
            if asset is None:
                missing.append(asset_id)
            else:
                found[asset_id] = asset
        if missing:
            raise PreconditionMissingError(
                f"Assets not registered on {self.cluster}: {', '.join(missing)}; run register-assets first",
                artifact=ASSETS_FILE,
                missing=missing,
            )
        return found

    def require_markets(self) -> List[DeployedMarket]:
        markets = self.markets
        if not markets:
            raise PreconditionMissingError(
                f"No markets recorded for {self.cluster}; run initialize-markets first",
                artifact=MARKETS_FILE,
            )
        return markets
