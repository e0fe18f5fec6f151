import argparse, logging, sys
from typing import List, Optional

import trio

from ._config import DEFAULT_LISTEN_ADDRESS, Credentials, ProxyConfig
from ._proxy import ForwardProxy


log = logging.getLogger("forwardproxy")


def parse_arguments(argv: Optional[List[str]] = None) -> ProxyConfig:
    parser = argparse.ArgumentParser(
        prog="forwardproxy",
        description="A forward HTTP proxy with CONNECT tunnelling.",
    )
    parser.add_argument("--listen", default=DEFAULT_LISTEN_ADDRESS,
                        help="listen address, e.g. 127.0.0.1:8080 (default: %(default)s)")
    parser.add_argument("--username", default="", help="proxy username (empty = no auth)")
    parser.add_argument("--password", default="", help="proxy password")
    parser.add_argument("--debug", action="store_true", help="show debug logs")
    args = parser.parse_args(argv)

    if bool(args.username) != bool(args.password):
        parser.error("--username and --password must be given together")
    credentials = Credentials(args.username, args.password) if args.username else None

    try:
        return ProxyConfig(listen_address=args.listen, credentials=credentials, debug=args.debug)
    except ValueError as e:
        parser.error(str(e))
        raise  # not reached, parser.error exits


def main(argv: Optional[List[str]] = None) -> int:
    config = parse_arguments(argv)
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        trio.run(ForwardProxy(config).serve)
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt - shutting down")
    except OSError as e:
        log.error("Could not listen on %s: %s", config.listen_address, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
