"""
API Server Runner

Entry point for running the FastAPI server with environment setup and
startup checks.

Design Considerations:
- Fail before binding the port when the token encryption key is missing
- Directory structure creation for the default SQLite database
"""

import argparse
import logging
import os
import sys
import traceback

import uvicorn
from dotenv import load_dotenv

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("api_runner")


def parse_arguments():
    """Parse command line arguments for the API server."""
    parser = argparse.ArgumentParser(description="Run the inbox draft agent API server")

    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind the server to (default: 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind the server to (default: 8000)"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--env",
        type=str,
        choices=["development", "testing", "production"],
        default="development",
        help="Environment to run in (default: development)"
    )

    return parser.parse_args()


def setup_environment(env):
    """
    Set environment variables and create the data directory.

    Args:
        env: Environment name (development, testing, production)
    """
    os.environ["ENVIRONMENT"] = env
    os.environ.setdefault("DEBUG", "true" if env == "development" else "false")

    os.makedirs("data", exist_ok=True)
    logger.info("Ensured directory exists: data")


def verify_required_configuration() -> bool:
    """
    Check the settings the server cannot start without.

    Returns:
        bool: True when every required variable is set
    """
    missing = [
        name for name in ("TOKEN_ENCRYPTION_KEY", "MICROSOFT_CLIENT_ID", "MICROSOFT_CLIENT_SECRET", "GROQ_API_KEY")
        if not os.environ.get(name)
    ]
    if missing:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        if "TOKEN_ENCRYPTION_KEY" in missing:
            logger.error("Generate a key with: "
                         "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\"")
        return False

    if not os.environ.get("WEBHOOK_BASE_URL"):
        logger.warning("WEBHOOK_BASE_URL is not set; subscriptions cannot be created")
    return True


def main():
    """Run the API server after environment setup and configuration checks."""
    args = parse_arguments()
    load_dotenv(override=False)

    setup_environment(args.env)

    if not verify_required_configuration():
        sys.exit(1)

    logger.info(f"Starting API server in {args.env} mode")
    logger.info(f"Server will be available at http://{args.host}:{args.port}")

    if args.env == "development":
        logger.info(f"API documentation will be available at http://{args.host}:{args.port}/docs")

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info" if args.env == "production" else "debug"
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Error running server: {str(e)}")
        logger.error(traceback.format_exc())
        sys.exit(1)
