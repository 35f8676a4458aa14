from pathlib import Path

import pytest

from hostengine.models.app_descriptor import AppDescriptor, CatalogEntry
from tests.fakes import (
    APP_ID,
    BYTES_TOTAL,
    LATEST_BUILD,
    FakeTransferClient,
    StaticCatalogSource,
    make_descriptor,
)


@pytest.fixture
def descriptor() -> AppDescriptor:
    return make_descriptor()


@pytest.fixture
def catalog_source(descriptor: AppDescriptor) -> StaticCatalogSource:
    return StaticCatalogSource(
        {
            APP_ID: CatalogEntry(
                descriptor=descriptor,
                latest_version=LATEST_BUILD,
                size_estimate=BYTES_TOTAL,
            )
        }
    )


@pytest.fixture
def transfer_client(descriptor: AppDescriptor) -> FakeTransferClient:
    return FakeTransferClient(descriptor)


@pytest.fixture
def install_path(tmp_path: Path) -> Path:
    return tmp_path / "srv" / APP_ID
