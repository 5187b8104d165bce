from bnpl_api.routers import admin, checkout, employer, lender, orders

__all__ = ["admin", "checkout", "employer", "lender", "orders"]
