"""
Storefront client

A thin REST client for the storefront API with a client-side query cache.
Reads are cached under a tuple query key; every successful mutation drops the
keys it affects so the next read goes back to the server.

    api = StorefrontClient("https://shop.example.io", token=token)
    api.addresses()                  # GET, cached under ("addresses",)
    api.add_address({...})           # POST, invalidates ("addresses",)
    api.addresses()                  # GET again
"""

from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

import httpx
from cachetools import TTLCache
from loguru import logger

QueryKey = Tuple[Hashable, ...]

DEFAULT_STALE_SECONDS = 300
DEFAULT_MAX_ENTRIES = 256


class ApiError(Exception):
    """Non-2xx response from the storefront API."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class QueryCache:
    """Last-fetched results keyed by query key; entries expire after `ttl` seconds."""

    def __init__(self, ttl: float = DEFAULT_STALE_SECONDS, maxsize: int = DEFAULT_MAX_ENTRIES):
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: QueryKey, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def set(self, key: QueryKey, value: Any) -> None:
        self._entries[key] = value

    def fetch(self, key: QueryKey, fetcher: Callable[[], Any]) -> Any:
        if key in self._entries:
            return self._entries[key]
        value = fetcher()
        self._entries[key] = value
        return value

    def invalidate(self, prefix: QueryKey) -> int:
        """Drop every entry whose key starts with `prefix`; returns how many were dropped."""
        stale = [k for k in list(self._entries.keys()) if k[: len(prefix)] == prefix]
        for k in stale:
            self._entries.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class StorefrontClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        cache: Optional[QueryCache] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.http = httpx.Client(
            base_url=base_url.rstrip("/") + "/api",
            headers=headers,
            transport=transport,
            timeout=timeout,
        )
        self.cache = cache or QueryCache()

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "StorefrontClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def set_token(self, token: str) -> None:
        self.http.headers["Authorization"] = f"Bearer {token}"
        self.cache.clear()

    # Transport

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self.http.request(method, path, **kwargs)
        if response.is_error:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            logger.debug("{} {} failed with {}: {}", method, path, response.status_code, detail)
            raise ApiError(response.status_code, detail)
        return response.json()

    def _query(self, key: QueryKey, path: str, field: Optional[str] = None, **params) -> Any:
        def fetch():
            data = self._request("GET", path, params=params or None)
            return data[field] if field else data
        return self.cache.fetch(key, fetch)

    def _mutate(self, method: str, path: str, invalidates: Iterable[QueryKey], **kwargs) -> Any:
        data = self._request(method, path, **kwargs)
        for key in invalidates:
            self.cache.invalidate(key)
        return data

    # Health and auth

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")

    def signup(self, name: str, email: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/auth/signup", json={"name": name, "email": email, "password": password})
        self.set_token(data["access_token"])
        return data["user"]

    def login(self, email: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/auth/login", json={"email": email, "password": password})
        self.set_token(data["access_token"])
        return data["user"]

    def me(self) -> Dict[str, Any]:
        return self._query(("me",), "/auth/me")

    # Addresses

    def addresses(self) -> List[Dict[str, Any]]:
        return self._query(("addresses",), "/users/addresses", field="addresses")

    def add_address(self, address: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = self._mutate("POST", "/users/addresses", [("addresses",)], json=address)
        return data["addresses"]

    def update_address(self, address_id: str, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = self._mutate("PUT", f"/users/addresses/{address_id}", [("addresses",)], json=changes)
        return data["addresses"]

    def delete_address(self, address_id: str) -> List[Dict[str, Any]]:
        data = self._mutate("DELETE", f"/users/addresses/{address_id}", [("addresses",)])
        return data["addresses"]

    # Wishlist

    def wishlist(self) -> List[Dict[str, Any]]:
        return self._query(("wishlist",), "/users/wishlist", field="wishlist")

    def add_to_wishlist(self, product_id: str) -> List[str]:
        data = self._mutate("POST", "/users/wishlist", [("wishlist",)], json={"product_id": product_id})
        return data["wishlist"]

    def remove_from_wishlist(self, product_id: str) -> List[str]:
        data = self._mutate("DELETE", f"/users/wishlist/{product_id}", [("wishlist",)])
        return data["wishlist"]

    # Catalog

    def products(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        if category:
            return self._query(("products", "category", category), "/products", category=category)
        return self._query(("products",), "/products")

    def product(self, product_id: str) -> Dict[str, Any]:
        return self._query(("products", product_id), f"/products/{product_id}")

    # Cart

    def cart(self) -> Dict[str, Any]:
        return self._query(("cart",), "/cart", field="cart")

    def add_to_cart(self, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        data = self._mutate("POST", "/cart", [("cart",)], json={"product_id": product_id, "quantity": quantity})
        return data["cart"]

    def update_cart_item(self, product_id: str, quantity: int) -> Dict[str, Any]:
        data = self._mutate("PUT", f"/cart/{product_id}", [("cart",)], json={"quantity": quantity})
        return data["cart"]

    def remove_from_cart(self, product_id: str) -> Dict[str, Any]:
        return self._mutate("DELETE", f"/cart/{product_id}", [("cart",)])["cart"]

    def clear_cart(self) -> Dict[str, Any]:
        return self._mutate("DELETE", "/cart", [("cart",)])["cart"]

    # Orders and reviews

    def orders(self) -> List[Dict[str, Any]]:
        return self._query(("orders",), "/orders", field="orders")

    def create_order(
        self,
        items: List[Dict[str, Any]],
        shipping_address: Dict[str, Any],
        payment_result: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body = {"order_items": items, "shipping_address": shipping_address, "payment_result": payment_result}
        data = self._mutate("POST", "/orders", [("orders",), ("cart",), ("products",)], json=body)
        return data["order"]

    def create_review(self, order_id: str, product_id: str, rating: int) -> Dict[str, Any]:
        body = {"order_id": order_id, "product_id": product_id, "rating": rating}
        data = self._mutate("POST", "/reviews", [("orders",), ("products",)], json=body)
        return data["review"]

    def delete_review(self, review_id: str) -> None:
        self._mutate("DELETE", f"/reviews/{review_id}", [("orders",), ("products",)])

    # Admin dashboard

    def admin_products(self) -> List[Dict[str, Any]]:
        return self._query(("admin", "products"), "/admin/products")

    def admin_create_product(self, fields: Dict[str, Any], images: List[Tuple[str, bytes, str]]) -> Dict[str, Any]:
        files = [("images", image) for image in images]
        return self._mutate(
            "POST", "/admin/products", [("admin", "products"), ("admin", "stats"), ("products",)],
            data=fields, files=files,
        )

    def admin_update_product(
        self,
        product_id: str,
        fields: Dict[str, Any],
        images: Optional[List[Tuple[str, bytes, str]]] = None,
    ) -> Dict[str, Any]:
        files = [("images", image) for image in images or []]
        return self._mutate(
            "PUT", f"/admin/products/{product_id}", [("admin", "products"), ("products",)],
            data=fields, files=files or None,
        )

    def admin_delete_product(self, product_id: str) -> None:
        self._mutate(
            "DELETE", f"/admin/products/{product_id}",
            [("admin", "products"), ("admin", "stats"), ("products",)],
        )

    def admin_orders(self) -> List[Dict[str, Any]]:
        return self._query(("admin", "orders"), "/admin/orders", field="orders")

    def admin_update_order_status(self, order_id: str, status: str) -> Dict[str, Any]:
        data = self._mutate(
            "PATCH", f"/admin/orders/{order_id}/status",
            [("admin", "orders"), ("admin", "stats"), ("orders",)],
            json={"status": status},
        )
        return data["order"]

    def admin_customers(self) -> List[Dict[str, Any]]:
        return self._query(("admin", "customers"), "/admin/customers", field="customers")

    def admin_stats(self) -> Dict[str, Any]:
        return self._query(("admin", "stats"), "/admin/stats")


def cart_item_count(cart: Dict[str, Any]) -> int:
    return sum(i["quantity"] for i in cart.get("items", []))


def cart_total(cart: Dict[str, Any]) -> float:
    return round(
        sum(i["quantity"] * (i.get("product") or {}).get("price", 0) for i in cart.get("items", [])),
        2,
    )
