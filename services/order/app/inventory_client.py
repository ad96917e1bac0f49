"""
Order Service — 在庫ゲートウェイクライアント

Product サービス（外部）への同期呼び出しをラップする。
自動リトライはしない。呼び出しごとにタイムアウトを設定し、
タイムアウトや通信エラーは DownstreamUnavailable として送出する。

  GET  /api/products/{id}/availability?quantity=q  → {"available": bool}
  GET  /api/products/{id}                          → {"name": ..., "price": ...}
  PUT  /api/products/{id}/stock?quantity=q          在庫引き当て（減算）
  POST /api/products/{id}/stock/restore?quantity=q  在庫の戻し（加算）
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from services.shared.errors import DownstreamUnavailable


@dataclass(frozen=True)
class ProductInfo:
    name: str
    price: Decimal


class InventoryClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, quantity: int | None = None) -> httpx.Response:
        params = {"quantity": quantity} if quantity is not None else None
        try:
            return await self._client.request(method, path, params=params)
        except httpx.TimeoutException as e:
            raise DownstreamUnavailable(f"Inventory call timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise DownstreamUnavailable(f"Inventory call failed: {method} {path}: {e}") from e

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DownstreamUnavailable(
                f"Inventory returned {resp.status_code} for {resp.request.url}"
            ) from e

    async def check_availability(self, product_id: str, quantity: int) -> bool:
        """在庫が quantity 以上あるか。存在しない商品は利用不可として扱う。"""
        resp = await self._request(
            "GET", f"/api/products/{product_id}/availability", quantity
        )
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp)
        try:
            return bool(resp.json().get("available", False))
        except ValueError as e:
            raise DownstreamUnavailable("Inventory returned a non-JSON availability body") from e

    async def get_product_info(self, product_id: str) -> ProductInfo:
        """正となる商品名と単価を取得する（クライアント申告の価格は使わない）。"""
        resp = await self._request("GET", f"/api/products/{product_id}")
        self._raise_for_status(resp)
        try:
            body = resp.json()
            return ProductInfo(name=str(body["name"]), price=Decimal(str(body["price"])))
        except (ValueError, KeyError, InvalidOperation) as e:
            raise DownstreamUnavailable(
                f"Failed to get product information: {product_id}"
            ) from e

    async def reserve_stock(self, product_id: str, quantity: int) -> None:
        resp = await self._request("PUT", f"/api/products/{product_id}/stock", quantity)
        self._raise_for_status(resp)

    async def restore_stock(self, product_id: str, quantity: int) -> None:
        resp = await self._request(
            "POST", f"/api/products/{product_id}/stock/restore", quantity
        )
        self._raise_for_status(resp)
