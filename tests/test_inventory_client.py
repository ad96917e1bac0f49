"""
Tests for the inventory gateway client.
"""
from decimal import Decimal

import httpx
import pytest

from conftest import FakeInventory
from services.order.app.inventory_client import InventoryClient
from services.shared.errors import DownstreamUnavailable


class TestInventoryClient:
    async def test_availability(self, inventory: InventoryClient) -> None:
        assert await inventory.check_availability("p-1", 5) is True
        assert await inventory.check_availability("p-1", 6) is False

    async def test_unknown_product_is_not_available(self, inventory: InventoryClient) -> None:
        assert await inventory.check_availability("nope", 1) is False

    async def test_product_info(self, inventory: InventoryClient) -> None:
        info = await inventory.get_product_info("p-2")
        assert info.name == "Mouse"
        assert info.price == Decimal("2.50")

    async def test_reserve_and_restore(
        self, inventory: InventoryClient, fake_inventory: FakeInventory
    ) -> None:
        await inventory.reserve_stock("p-1", 2)
        assert fake_inventory.products["p-1"]["stock"] == 3
        await inventory.restore_stock("p-1", 2)
        assert fake_inventory.products["p-1"]["stock"] == 5

    async def test_connection_error(
        self, inventory: InventoryClient, fake_inventory: FakeInventory
    ) -> None:
        fake_inventory.down = True
        with pytest.raises(DownstreamUnavailable):
            await inventory.check_availability("p-1", 1)

    async def test_server_error_on_reserve(
        self, inventory: InventoryClient, fake_inventory: FakeInventory
    ) -> None:
        fake_inventory.fail_stock_updates = True
        with pytest.raises(DownstreamUnavailable, match="503"):
            await inventory.reserve_stock("p-1", 1)

    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = InventoryClient("http://product-service", transport=httpx.MockTransport(handler))
        with pytest.raises(DownstreamUnavailable, match="timed out"):
            await client.get_product_info("p-1")
        await client.aclose()

    async def test_malformed_product_body(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"name": "X"}))
        client = InventoryClient("http://product-service", transport=transport)
        with pytest.raises(DownstreamUnavailable, match="Failed to get product information"):
            await client.get_product_info("p-1")
        await client.aclose()
