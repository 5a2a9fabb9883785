from appforge.publishing.coordinator import PublishCoordinator, resolve_aab_path
from appforge.publishing.credentials import load_service_account_info, resolve_publish_credentials
from appforge.publishing.storefront import GooglePlayStorefront, Storefront

__all__ = [
    "GooglePlayStorefront",
    "PublishCoordinator",
    "Storefront",
    "load_service_account_info",
    "resolve_aab_path",
    "resolve_publish_credentials",
]
