import logging
from typing import Optional

import httpx

from app.config import (
    HTTP_TIMEOUT_SECONDS,
    SHOPIFY_ADMIN_API_ACCESS_TOKEN,
    SHOPIFY_API_VERSION,
    SHOPIFY_STORE_DOMAIN,
    SHOPIFY_STOREFRONT_ACCESS_TOKEN,
)
from app.errors import CommercePlatformError

logger = logging.getLogger(__name__)

CUSTOMER_GID_PREFIX = "gid://shopify/Customer/"

CART_QUERY = """
query CartForCheckout($id: ID!) @inContext(country: VN, language: VI) {
  cart(id: $id) {
    id
    buyerIdentity { email }
    cost {
      subtotalAmount { amount currencyCode }
      totalAmount { amount currencyCode }
    }
    lines(first: 100) {
      edges {
        node {
          quantity
          merchandise {
            __typename
            ... on ProductVariant {
              id
              title
              sku
              price { amount currencyCode }
              product { title vendor }
            }
          }
        }
      }
    }
  }
}
"""

ORDER_CREATE_MUTATION = """
mutation CreateOrder($order: OrderCreateOrderInput!, $options: OrderCreateOptionsInput) {
  orderCreate(order: $order, options: $options) {
    order { id name confirmed displayFinancialStatus }
    userErrors { field message }
  }
}
"""

ORDER_MARK_AS_PAID_MUTATION = """
mutation MarkAsPaid($id: ID!) {
  orderMarkAsPaid(input: { id: $id }) {
    order { id displayFinancialStatus }
    userErrors { field message }
  }
}
"""


def _post_graphql(url: str, headers: dict, query: str, variables: dict) -> dict:
    try:
        response = httpx.post(
            url,
            json={"query": query, "variables": variables},
            headers={"Content-Type": "application/json", **headers},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        raise CommercePlatformError(f"Shopify request failed: {exc}") from exc

    if response.status_code >= 400:
        raise CommercePlatformError(
            f"Shopify API error: {response.status_code} {response.text}"
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise CommercePlatformError(
            f"Shopify API returned a non-JSON body: {response.status_code}"
        ) from exc

    if payload.get("errors"):
        messages = "; ".join(error.get("message", "") for error in payload["errors"])
        raise CommercePlatformError(f"Shopify GraphQL error: {messages}")
    if payload.get("data") is None:
        raise CommercePlatformError("Shopify API did not return data")
    return payload["data"]


def admin_graphql(query: str, variables: dict) -> dict:
    url = f"https://{SHOPIFY_STORE_DOMAIN}/admin/api/{SHOPIFY_API_VERSION}/graphql.json"
    return _post_graphql(
        url, {"X-Shopify-Access-Token": SHOPIFY_ADMIN_API_ACCESS_TOKEN}, query, variables
    )


def storefront_graphql(query: str, variables: dict) -> dict:
    url = f"https://{SHOPIFY_STORE_DOMAIN}/api/{SHOPIFY_API_VERSION}/graphql.json"
    return _post_graphql(
        url, {"X-Shopify-Storefront-Access-Token": SHOPIFY_STOREFRONT_ACCESS_TOKEN}, query, variables
    )


def _raise_user_errors(operation: str, user_errors: list):
    if user_errors:
        message = "; ".join(
            error["message"] + (f" ({'.'.join(error['field'])})" if error.get("field") else "")
            for error in user_errors
        )
        raise CommercePlatformError(f"Shopify {operation} failed: {message}")


def fetch_cart(cart_id: str) -> Optional[dict]:
    return storefront_graphql(CART_QUERY, {"id": cart_id}).get("cart")


def normalize_customer_gid(customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    if customer_id.startswith(CUSTOMER_GID_PREFIX):
        return customer_id
    return f"{CUSTOMER_GID_PREFIX}{customer_id}"


def build_customer_input(customer_id: Optional[str]) -> Optional[dict]:
    gid = normalize_customer_gid(customer_id)
    return {"toAssociate": {"id": gid}} if gid else None


def build_discount_code_input(code: Optional[str], amount: Optional[int], currency: str = "VND") -> Optional[dict]:
    # The cart already computed the discount, so it is applied as a fixed amount.
    if not code or not amount or amount <= 0:
        return None
    return {
        "itemFixedDiscountCode": {
            "code": code,
            "amountSet": {"shopMoney": {"amount": str(amount), "currencyCode": currency}},
        }
    }


def create_order(order: dict, send_receipt: bool = True) -> dict:
    data = admin_graphql(
        ORDER_CREATE_MUTATION,
        {"order": order, "options": {"sendReceipt": send_receipt}},
    )
    result = data["orderCreate"]
    _raise_user_errors("orderCreate", result.get("userErrors") or [])
    if not result.get("order"):
        raise CommercePlatformError("Shopify orderCreate did not return an order")
    logger.info("Created Shopify order %s (%s)", result["order"]["name"], result["order"]["id"])
    return result["order"]


def mark_order_paid(order_id: str) -> dict:
    data = admin_graphql(ORDER_MARK_AS_PAID_MUTATION, {"id": order_id})
    result = data["orderMarkAsPaid"]
    _raise_user_errors("orderMarkAsPaid", result.get("userErrors") or [])
    if not result.get("order"):
        raise CommercePlatformError("Shopify orderMarkAsPaid did not return an order")
    return result["order"]
