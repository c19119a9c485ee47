"""Shared pytest fixtures and utilities for BarStock tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from barstock import cli, constants, core_logic, data_manager  # noqa: E402
from barstock.setup_excel import create_master_workbook  # noqa: E402
from barstock.store import MemoryStore, WorkbookStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ROSTER = ("Ada", "Bola")
START_OF_SHIFT = datetime(2024, 5, 10, 18, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BarName = {bar_name}\n"
    "SchemaVersion = {schema_version}\n"
    "TimeZone = {timezone}\n\n"
    "[Staff]\n"
    "Roster = {roster}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    bar_name: str


class FakeClock:
    """Store clock that only moves when a test says so."""

    def __init__(self, start: datetime = START_OF_SHIFT) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "bar_data.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        bar_name: str = "Test Bar",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        roster: tuple[str, ...] = DEFAULT_ROSTER,
        timezone: str = "UTC",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                bar_name=bar_name,
                schema_version=schema_version,
                timezone=timezone,
                roster=", ".join(roster),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            bar_name=bar_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for business logic tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "bar_data.xlsx",
        bar_name="Test Bar",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        staff_roster=DEFAULT_ROSTER,
        timezone="UTC",
    )


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, memory_store: MemoryStore) -> core_logic.RuntimeContext:
    """Runtime context over an in-memory store driven by ``clock``."""

    return core_logic.RuntimeContext(settings=settings, store=memory_store)


@pytest.fixture
def workbook_context(
    config_bundle: ConfigBundle, clock: FakeClock
) -> core_logic.RuntimeContext:
    """Runtime context over a real workbook file, driven by ``clock``."""

    parser = data_manager.read_config(config_bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=config_bundle.directory)
    return core_logic.RuntimeContext(settings=settings, store=WorkbookStore(settings.data_file, clock=clock))


@pytest.fixture
def add_item(context: core_logic.RuntimeContext) -> Callable[..., data_manager.ItemRow]:
    """Factory adding a catalog item with opening stock to ``context``."""

    def _add(name: str = "Beer", price: str = "2.50", stock: int = 10) -> data_manager.ItemRow:
        return core_logic.add_item(context, name, Decimal(price), stock)

    return _add


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="barstock", description="BarStock CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
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
