"""Shared pytest fixtures and utilities for StockFlow tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

src_str = str(SRC_DIR)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from stockflow import cli, constants, core_logic, data_manager  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDir = {data_dir}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
)
_REORDER_TEMPLATE = (
    "\n[Reorder]\n"
    "Endpoint = {endpoint}\n"
    "TimeoutSeconds = 5\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_dir: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def blob_store(tmp_path: Path) -> data_manager.DirectoryBlobStore:
    """Return an empty blob store rooted in a temp folder."""

    return data_manager.open_blob_store(tmp_path / f"data_{uuid.uuid4().hex}")


@pytest.fixture
def store() -> core_logic.InventoryStore:
    """Return an empty, unpersisted ledger."""

    return core_logic.InventoryStore()


@pytest.fixture
def persisted_store(blob_store: data_manager.DirectoryBlobStore) -> core_logic.InventoryStore:
    """Return an empty ledger that writes through to ``blob_store``."""

    return core_logic.InventoryStore(blob_store=blob_store)


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/data directory bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        empty_ledger: bool = True,
        reorder_endpoint: str | None = None,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_dir = bundle_dir / "data"
        if empty_ledger:
            # An explicit empty list keeps the seed catalogue out of the test.
            data_manager.open_blob_store(data_dir).set(constants.PRODUCTS_KEY, "[]")
        text = _CONFIG_TEMPLATE.format(
            data_dir="data" if make_relative else str(data_dir),
            store_name=store_name,
            schema_version=schema_version,
        )
        if reorder_endpoint is not None:
            text += _REORDER_TEMPLATE.format(endpoint=reorder_endpoint)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(text)
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_dir=data_dir,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stockflow", description="StockFlow CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
