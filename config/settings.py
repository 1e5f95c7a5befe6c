"""
Storefront Core - Centralized Configuration
============================================
All environment variables and constants are loaded here.
No other module should call os.getenv() directly.
"""

import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


# ==========================================
# 🗄️ Database
# ==========================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")
DB_ECHO = _flag("DB_ECHO")


# ==========================================
# 💰 Money
# ==========================================
STORE_CURRENCY = os.getenv("STORE_CURRENCY", "BRL")
MONEY_QUANTUM = Decimal("0.01")


# ==========================================
# 🛒 Cart
# ==========================================
MAX_QUANTITY_PER_ITEM = int(os.getenv("MAX_QUANTITY_PER_ITEM") or "99")
MAX_CART_ITEMS = int(os.getenv("MAX_CART_ITEMS") or "100")
MERGE_GUEST_CART = _flag("MERGE_GUEST_CART", "true")


# ==========================================
# 📦 Inventory & Orders
# ==========================================
# Reported availability for products that do not track stock
UNTRACKED_STOCK_QUANTITY = int(os.getenv("UNTRACKED_STOCK_QUANTITY") or "999")
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "ORD")
COUPON_CODE_PREFIX = os.getenv("COUPON_CODE_PREFIX", "CP")


# ==========================================
# 📣 Notifications
# ==========================================
NOTIFICATIONS_ENABLED = _flag("NOTIFICATIONS_ENABLED", "true")
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
NOTIFICATION_TIMEOUT = int(os.getenv("NOTIFICATION_TIMEOUT") or "5")
