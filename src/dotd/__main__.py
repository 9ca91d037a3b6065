"""Entry point for dotd."""
import asyncio
import sys
from .config import logger
from .exceptions import ConfigurationError
from .server import main as server_main

__all__ = ['main']


def main():
    """Main entry point for the dotd console script."""
    try:
        asyncio.run(server_main())
    except KeyboardInterrupt:
        pass
    except ConfigurationError as e:
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)
    except OSError as e:
        logger.critical(f"Cannot start UDP server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
