from clients.runpod_client import ProviderError, RunpodClient, runpod_client_from_settings
from clients.shopify_client import ShopifyClient, ShopifyError
from clients.storage_client import StorageError, SupabaseStorageClient

__all__ = [
    "ProviderError",
    "RunpodClient",
    "runpod_client_from_settings",
    "ShopifyClient",
    "ShopifyError",
    "StorageError",
    "SupabaseStorageClient",
]
