"""Collection names and the fields each collection is queryable by."""

USERS = "users"
EXPERTS = "experts"
PRODUCTS = "products"
TRANSACTIONS = "transactions"
SUBSCRIPTIONS = "subscriptions"
PAYMENTS = "payments"
PAYOUTS = "payouts"
TRANSFERS = "transfers"
NOTIFICATIONS = "notifications"

# collection -> fields maintained in a secondary index for find()
INDEXED_FIELDS: dict[str, tuple[str, ...]] = {
    USERS: ("stripe_customer_id",),
    EXPERTS: ("stripe_account_id", "user_id"),
    PAYMENTS: ("user_id", "invoice_id"),
    TRANSACTIONS: ("payment_intent_id",),
    PAYOUTS: ("account_id",),
    TRANSFERS: ("destination",),
}
