"""Shared pytest fixtures and utilities for margin report tests."""

from __future__ import annotations

import json
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from margin_report import data_manager, view_state  # noqa: E402

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDirectory = {data_directory}\n"
    "ExportDirectory = {export_directory}\n\n"
    "[Defaults]\n"
    "TopN = {top_n}\n"
    "ViewMode = {view_mode}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_directory: Path
    export_directory: Path


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


def _figures(total_sales: Any, total_cost: Any, total_quantity: Any) -> dict[str, Decimal]:
    sales = Decimal(str(total_sales))
    cost = Decimal(str(total_cost))
    margin = sales - cost
    return {
        "total_quantity": Decimal(str(total_quantity)),
        "total_sales": sales,
        "total_cost": cost,
        "margin": margin,
        "margin_percent": data_manager.safe_margin_percent(margin, sales),
    }


@pytest.fixture
def make_item() -> Callable[..., data_manager.ItemMarginRecord]:
    """Factory for item records whose margin figures are consistent."""

    def _make(
        item_code: str,
        *,
        sales: Any = 100,
        cost: Any = 80,
        quantity: Any = 1,
        description: Optional[str] = None,
        posting_group: Optional[str] = None,
        **overrides: Any,
    ) -> data_manager.ItemMarginRecord:
        values = _figures(sales, cost, quantity)
        values.update(overrides)
        return data_manager.ItemMarginRecord(
            item_code=item_code,
            description=description if description is not None else f"Item {item_code}",
            posting_group=posting_group,
            **values,
        )

    return _make


@pytest.fixture
def make_customer() -> Callable[..., data_manager.CustomerMarginRecord]:
    """Factory for customer records whose margin figures are consistent."""

    def _make(
        customer_code: str,
        *,
        sales: Any = 100,
        cost: Any = 80,
        quantity: Any = 1,
        customer_name: Optional[str] = None,
        search_name: Optional[str] = None,
        **overrides: Any,
    ) -> data_manager.CustomerMarginRecord:
        values = _figures(sales, cost, quantity)
        values.update(overrides)
        return data_manager.CustomerMarginRecord(
            customer_code=customer_code,
            customer_name=customer_name,
            search_name=search_name,
            **values,
        )

    return _make


@pytest.fixture
def make_category() -> Callable[..., data_manager.CategoryMarginRecord]:
    """Factory for category records whose margin figures are consistent."""

    def _make(
        posting_group: str,
        *,
        sales: Any = 100,
        cost: Any = 80,
        quantity: Any = 1,
        **overrides: Any,
    ) -> data_manager.CategoryMarginRecord:
        values = _figures(sales, cost, quantity)
        values.update(overrides)
        return data_manager.CategoryMarginRecord(posting_group=posting_group, **values)

    return _make


@pytest.fixture
def raw_payload() -> dict[str, Any]:
    """Processed-shape payload as the aggregation service hands it over."""

    return {
        "overall": {
            "total_sales": 1000,
            "total_cost": 750,
            "margin": 250,
            "margin_percent": 25,
            "total_credit_memos": 100,
            "adjusted_sales": 900,
            "adjusted_margin": 150,
            "adjusted_margin_percent": 16.67,
        },
        "topItems": [
            {"item_code": "X1", "description": "Olive oil", "total_quantity": 10, "total_sales": 100,
             "total_cost": 72, "margin": 28, "margin_percent": 28, "posting_group": "OIL"},
            {"item_code": "X2", "description": "Basmati rice", "total_quantity": 5, "total_sales": 200,
             "total_cost": 160, "margin": 40, "margin_percent": 20, "posting_group": "GRAIN"},
            {"item_code": "Y3", "description": None, "total_quantity": 3, "total_sales": 50,
             "total_cost": 45, "margin": 5, "margin_percent": 10, "posting_group": "GRAIN"},
        ],
        "adjustedItems": [
            {"item_code": "X1", "description": "Olive oil", "total_quantity": 9, "total_sales": 90,
             "total_cost": 72, "margin": 18, "margin_percent": 20, "posting_group": "OIL"},
        ],
        "topCustomers": [
            {"customer_code": "C1", "customer_name": "Acme Foods", "search_name": "ACME",
             "total_quantity": 4, "total_sales": 400, "total_cost": 300, "margin": 100, "margin_percent": 25},
            {"customer_code": "C2", "customer_name": "Bistro Verde", "search_name": None,
             "total_quantity": 2, "total_sales": 0, "total_cost": 0, "margin": 0, "margin_percent": 0},
        ],
        "categories": [
            {"posting_group": "OIL", "total_quantity": 10, "total_sales": 100, "total_cost": 72,
             "margin": 28, "margin_percent": 28},
            {"posting_group": "GRAIN", "total_quantity": 8, "total_sales": 250, "total_cost": 205,
             "margin": 45, "margin_percent": 18},
        ],
    }


@pytest.fixture
def sample_dataset(raw_payload: dict[str, Any]) -> data_manager.ProcessedMarginDataset:
    return data_manager.parse_margin_payload(raw_payload)


@dataclass
class StubSource:
    """In-memory data source recording every fetch."""

    datasets: dict
    calls: list

    def fetch(self, year: int, month: int) -> data_manager.ProcessedMarginDataset:
        self.calls.append((year, month))
        if (year, month) not in self.datasets:
            raise FileNotFoundError(f"No data for {year}-{month}")
        return self.datasets[(year, month)]


@pytest.fixture
def stub_source(sample_dataset: data_manager.ProcessedMarginDataset) -> StubSource:
    return StubSource(datasets={(2025, 3): sample_dataset}, calls=[])


@pytest.fixture
def controller(stub_source: StubSource) -> view_state.MarginViewController:
    """Controller with the March 2025 sample dataset loaded."""

    ctrl = view_state.MarginViewController()
    ctrl.select_period(stub_source, 2025, 3)
    return ctrl


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/data-directory bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        top_n: str = "20",
        view_mode: str = "standard",
        payloads: Optional[dict] = None,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        data_directory = bundle_dir / "data"
        export_directory = bundle_dir / "exports"
        data_directory.mkdir(parents=True, exist_ok=True)

        for (year, month), payload in (payloads or {}).items():
            path = data_manager.dataset_path_for(data_directory, year, month)
            path.write_text(json.dumps(payload), encoding="utf-8")

        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_directory="data" if make_relative else data_directory,
                export_directory="exports" if make_relative else export_directory,
                top_n=top_n,
                view_mode=view_mode,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_directory=data_directory,
            export_directory=export_directory,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle], raw_payload: dict[str, Any]) -> ConfigBundle:
    """Config bundle holding the sample payload for March 2025."""

    return config_factory(payloads={(2025, 3): raw_payload})
