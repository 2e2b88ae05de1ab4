import argparse
import logging
import os
import sys

from assetd.assets import AssetRoot
from assetd.config import Config
from assetd.errors import AssetSourceError
from assetd.lifecycle import EXIT_STARTUP_FAILURE, serve

logger = logging.getLogger("assetd")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Serve a directory of static assets over HTTP")
    parser.add_argument("--host", "-H", type=str, default="", help="host to listen on (default: all interfaces)")
    parser.add_argument("--port", "-p", type=int, default=8080, help="port to listen on")
    parser.add_argument("--root", "-r", type=str, default=None, help="directory or .zip archive to serve instead of the bundled assets")
    parser.add_argument("--debug", "-D", action="store_true", help="enable debug logging")

    args = parser.parse_args(argv)
    config = Config(host=args.host, port=args.port, debug=args.debug)

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.root is None:
            assets = AssetRoot.bundled()
        elif os.path.isfile(args.root):
            assets = AssetRoot.from_archive(args.root)
        else:
            assets = AssetRoot.from_directory(args.root)
    except AssetSourceError as e:
        logger.critical("startup failed: %s", e)
        sys.exit(EXIT_STARTUP_FAILURE)

    sys.exit(serve(config, assets))


if __name__ == "__main__":
    main()
