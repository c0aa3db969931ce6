#!/usr/bin/env python3
"""
Command line entrypoint for the puppet bridge.

    python -m src.main --config config.json --generate-registration --url http://localhost:8090
    python -m src.main --config config.json --associate mypair
    python -m src.main --config config.json --adapter mypackage.adapter:create_adapter
"""
import argparse
import asyncio
import getpass
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from src.bridges.puppet_bridge import BridgeStartupError, PuppetBridgeApp, load_adapter_factory
from src.core.config import (
    BridgeConfig,
    ConfigurationError,
    associate_token,
    generate_registration,
    load_registration,
    setup_logging,
)
from src.matrix.puppet import PuppetLoginError, login_for_token

logger = logging.getLogger("puppet_bridge.main")

DEFAULT_ADAPTER = "src.adapters.echo:create_adapter"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Matrix puppet bridge: mirror third-party networks into Matrix as your own user"
    )
    parser.add_argument(
        '--config', '-c',
        default=os.getenv("BRIDGE_CONFIG", "config.json"),
        help='Path to the JSON config file (default: $BRIDGE_CONFIG or config.json)'
    )
    parser.add_argument(
        '--generate-registration', '-r',
        action='store_true',
        help='Write the application service registration file and exit'
    )
    parser.add_argument(
        '--url', '-u',
        help='URL the homeserver uses to reach this bridge (with --generate-registration)'
    )
    parser.add_argument(
        '--registration', '-f',
        help='Registration file path (default: registrationPath from the config)'
    )
    parser.add_argument(
        '--associate',
        metavar='PAIR_ID',
        help='Log the puppet of an identity pair in and store its access token in the config'
    )
    parser.add_argument(
        '--token',
        help='Access token to store with --associate instead of prompting for a password'
    )
    parser.add_argument(
        '--adapter',
        default=os.getenv("BRIDGE_ADAPTER", DEFAULT_ADAPTER),
        help='Adapter factory as module:callable (default: $BRIDGE_ADAPTER or the echo adapter)'
    )
    parser.add_argument(
        '--host',
        default="0.0.0.0",
        help='Interface to listen on'
    )
    return parser


async def associate(config: BridgeConfig, config_path: str, pair_id: str, token: Optional[str]) -> None:
    pair = config.find_identity_pair(pair_id)
    if pair is None:
        raise ConfigurationError(f"No identity pair with id '{pair_id}'")
    if not token:
        user_id = config.puppet_user_id(pair)
        password = getpass.getpass(f"Enter password for {user_id}: ")
        token = await login_for_token(config.homeserver_url, user_id, password)
    associate_token(config_path, pair_id, token)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv('.env')
    args = build_parser().parse_args(argv)

    try:
        config = BridgeConfig.from_file(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level)
    registration_path = args.registration or config.registration_path

    try:
        if args.generate_registration:
            if not args.url:
                raise ConfigurationError("--generate-registration needs --url")
            generate_registration(config, args.url, registration_path)
            return 0

        if args.associate:
            asyncio.run(associate(config, args.config, args.associate, args.token))
            return 0

        registration = load_registration(registration_path)
        bridge = PuppetBridgeApp(config, registration, load_adapter_factory(args.adapter), config_path=args.config)
        asyncio.run(bridge.serve(host=args.host))
        return 0
    except (ConfigurationError, BridgeStartupError, PuppetLoginError) as e:
        logger.error(f"Bridge cannot start: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
