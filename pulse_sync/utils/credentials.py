"""Bootstrap the GA4 service-account file from configuration.

On PaaS hosts the credential JSON can't be committed, so it is pasted
into GA4_CREDENTIALS_JSON (or the shared GOOGLE_SA_JSON) and written to
``ga4_credentials_path`` at startup when that file is missing.
"""
import json
import os

from pulse_sync.config import Settings
from pulse_sync.utils.logger import log


def _is_json(value: str) -> bool:
    """Check if a string looks like JSON content (not a file path)."""
    stripped = value.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def bootstrap_credentials(settings: Settings) -> bool:
    """Write the GA4 credentials file if it is missing. Returns True when a file was written."""
    file_path = settings.ga4_credentials_path
    if os.path.exists(file_path):
        log.info(f"Credential file {file_path} already exists, skipping")
        return False

    json_str = None
    source = None
    for name, value in (("GA4_CREDENTIALS_JSON", settings.ga4_credentials_json),
                        ("GOOGLE_SA_JSON", settings.google_sa_json)):
        if value and _is_json(value):
            json_str = value
            source = name
            break

    if not json_str:
        return False

    try:
        json.loads(json_str)  # Validate it's real JSON
    except json.JSONDecodeError:
        log.error(f"{source} is not valid JSON, skipping")
        return False

    directory = os.path.dirname(file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(file_path, "w") as f:
        f.write(json_str)
    log.info(f"Wrote {file_path} from {source}")
    return True
