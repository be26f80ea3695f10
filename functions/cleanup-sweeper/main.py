import os
import logging
import functions_framework
import httpx
from google.cloud import secretmanager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Helper
def get_secret(project_id: str, secret_id: str, version_id: str = "latest") -> str:
    try:
        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project_id}/secrets/{secret_id}/versions/{version_id}"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode('UTF-8')
    except Exception as e:
        logger.warning(f"Could not fetch secret {secret_id}: {e}")
        return ""

# Bootstrapping Variable
PROJECT_ID = os.getenv("PROJECT_ID")

# Constants
CLEANUP_PATH = "/api/cleanup-expired-premium"
REQUEST_TIMEOUT_SECONDS = 60.0

def load_config():
    """Reads the billing API location and shared secret, Secret Manager first."""
    base_url = os.getenv("BILLING_API_URL", "")
    secret = os.getenv("CLEANUP_SECRET", "")
    if PROJECT_ID:
        base_url = get_secret(PROJECT_ID, "BILLING_API_URL") or base_url
        secret = get_secret(PROJECT_ID, "CLEANUP_SECRET") or secret
    return base_url.rstrip("/"), secret


@functions_framework.http
def cleanup_expired_premium(request):
    """
    Triggered by Cloud Scheduler. Asks the billing API to downgrade lapsed
    premium users and relays the resulting counts.
    """
    base_url, secret = load_config()
    if not base_url or not secret:
        logger.error("BILLING_API_URL or CLEANUP_SECRET is not configured")
        return {"error": "Cleanup trigger is not configured"}, 500

    try:
        response = httpx.post(
            f"{base_url}{CLEANUP_PATH}",
            headers={"X-Cleanup-Secret": secret},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(f"Cleanup endpoint returned {e.response.status_code}: {e.response.text}")
        return {"error": "Cleanup failed", "status": e.response.status_code}, 502
    except httpx.RequestError as e:
        logger.error(f"Could not reach billing API: {e}")
        return {"error": "Billing API unreachable"}, 502

    stats = response.json().get("stats", {})
    logger.info(f"Cleanup finished: {stats}")
    return {"success": True, "stats": stats}, 200
