import os
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/luminila')
        # Comma-separated list of allowed CORS origins for the admin web app.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.http_timeout_s = self._float("HTTP_TIMEOUT_S", 20.0)

        # Shopify Admin (GraphQL).
        self.shopify_store_domain = (os.getenv("SHOPIFY_STORE_DOMAIN") or "").strip()
        self.shopify_access_token = (os.getenv("SHOPIFY_ACCESS_TOKEN") or "").strip()
        self.shopify_api_version = (os.getenv("SHOPIFY_API_VERSION") or "").strip() or "2024-01"

        # WooCommerce REST v3.
        self.woocommerce_url = (os.getenv("WOOCOMMERCE_URL") or "").strip().rstrip("/")
        self.woocommerce_consumer_key = (os.getenv("WOOCOMMERCE_CONSUMER_KEY") or "").strip()
        self.woocommerce_consumer_secret = (os.getenv("WOOCOMMERCE_CONSUMER_SECRET") or "").strip()

        # WPPConnect sidecar.
        self.wppconnect_url = (os.getenv("WPPCONNECT_URL") or "").strip().rstrip("/") or "http://127.0.0.1:21465"
        self.whatsapp_session = (os.getenv("WHATSAPP_SESSION") or "").strip() or "luminila"
        self.whatsapp_webhook_secret = (os.getenv("WHATSAPP_WEBHOOK_SECRET") or "").strip()
        self.whatsapp_company_id = (os.getenv("WHATSAPP_COMPANY_ID") or "").strip()
        self.whatsapp_admin_phones = [
            "".join(ch for ch in p if ch.isdigit())
            for p in self._split_csv(os.getenv("WHATSAPP_ADMIN_PHONES", ""), default=[])
        ]
        self.whatsapp_brand_name = (os.getenv("WHATSAPP_BRAND_NAME") or "").strip() or "Luminila"
        self.catalog_url = (os.getenv("CATALOG_URL") or "").strip() or "https://luminila.com/collections"

    @property
    def shopify_configured(self) -> bool:
        return bool(self.shopify_store_domain and self.shopify_access_token)

    @property
    def woocommerce_configured(self) -> bool:
        return bool(self.woocommerce_url and self.woocommerce_consumer_key and self.woocommerce_consumer_secret)

settings = Settings()
