import os

import uvicorn
from dotenv import load_dotenv

from meterboard.api.app import configure_logging
from meterboard.api.config import get_env_int, get_env_str


def main() -> None:
    load_dotenv()
    configure_logging(os.getenv("LOG_DIR", "logs"))
    host = get_env_str("METERBOARD_HOST", "0.0.0.0")
    port = get_env_int("METERBOARD_PORT", 8080)
    uvicorn.run("meterboard.api.app:create_app", factory=True, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
