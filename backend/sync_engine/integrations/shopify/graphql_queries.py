import json


# 外层 mutation：把内层查询字符串作为变量传入，触发 bulk 导出
RUN_BULK_QUERY = """
mutation RunBulk($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message code }
  }
}
""".strip()


# 轮询：通过 BulkOperation GID 取状态 / 结果 URL
BULK_OPERATION_BY_ID = """
query BulkById($id: ID!) {
  node(id: $id) {
    __typename
    ... on BulkOperation {
      id
      status
      errorCode
      objectCount
      rootObjectCount
      url
      createdAt
      completedAt
    }
  }
}
""".strip()


SHOP_PING = """
{
  shop {
    name
    myshopifyDomain
    currencyCode
    ianaTimezone
  }
}
""".strip()


def escape_search_value(value: str) -> str:
    """转义后放进 Shopify 搜索字符串，统一包裹单引号。"""
    inner = json.dumps(value or "")[1:-1].replace("'", "\\'")
    return f"'{inner}'"


def orders_search_filter(updated_since: str) -> str:
    return f"updated_at:>{escape_search_value(updated_since)}"


# 订单 Bulk：订单行 + lineItems（JSONL 中独立成行，带 __parentId）+ 内嵌 transactions 列表
# %(orders_args)s 由调用方填入，例如 (query: "updated_at:>'2024-05-01T00:00:00Z'")，全量时为空
BULK_ORDERS = r"""
{
  orders%(orders_args)s {
    edges {
      node {
        id
        name
        email
        createdAt
        updatedAt
        processedAt
        cancelledAt
        cancelReason
        confirmed
        displayFinancialStatus
        displayFulfillmentStatus
        currencyCode
        presentmentCurrencyCode
        subtotalPriceSet { shopMoney { amount currencyCode } }
        totalPriceSet { shopMoney { amount currencyCode } }
        totalTaxSet { shopMoney { amount currencyCode } }
        totalDiscountsSet { shopMoney { amount currencyCode } }
        totalShippingPriceSet { shopMoney { amount currencyCode } }
        customer { id }
        tags
        test
        transactions {
          id
          kind
          status
          gateway
          amountSet { shopMoney { amount currencyCode } }
          authorizationCode
          processedAt
          test
          errorCode
        }
        lineItems {
          edges {
            node {
              id
              title
              variantTitle
              quantity
              sku
              vendor
              originalUnitPriceSet { shopMoney { amount currencyCode } }
              discountedTotalSet { shopMoney { amount currencyCode } }
              product { id }
              variant { id sku }
            }
          }
        }
      }
    }
  }
}
""".strip()


# Shopify Payments 结算单
BULK_PAYOUTS = r"""
{
  shopifyPaymentsAccount {
    payouts {
      edges {
        node {
          id
          status
          issuedAt
          transactionType
          net { amount currencyCode }
        }
      }
    }
  }
}
""".strip()


def build_orders_query(updated_since: str | None = None) -> str:
    if updated_since:
        args = f"(query: {json.dumps(orders_search_filter(updated_since))})"
    else:
        args = ""
    return BULK_ORDERS % {"orders_args": args}
