"""
Provisioning plane server runner.
Usage: python -m provisioning_plane.run_server
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def main():
    import uvicorn
    from .api import create_app
    from .config import ProvisioningConfig
    from .logging_config import configure_logging

    env_path = Path(__file__).parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    config = ProvisioningConfig.from_env()
    configure_logging(config.log_level, config.log_format)

    logger.info(f"Configured providers: {', '.join(config.available_providers()) or 'none'}")
    if not config.admin_api_keys:
        logger.warning("ADMIN_API_KEYS not set, admin endpoints will refuse every request")

    app = create_app(config)

    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8001")),
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
