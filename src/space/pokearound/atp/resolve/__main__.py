from typing import List
import argparse
import aiohttp
import asyncio
import logging

from space.pokearound.atp.atproto.errors import ATProtoError
from space.pokearound.atp.atproto.pds import discover_auth_server
from space.pokearound.atp.resolve.handle import (
    DEFAULT_HANDLE_RESOLVER,
    PLC_DIRECTORY,
    resolve_identity,
)

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles")
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default=PLC_DIRECTORY,
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--handle-resolver",
        default=DEFAULT_HANDLE_RESOLVER,
        help="The server used to resolve handles with com.atproto.identity.resolveHandle.",
    )
    parser.add_argument(
        "--discover",
        action="store_true",
        help="Also discover the authorization server of each resolved PDS.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                resolved = await resolve_identity(
                    session,
                    subject,
                    plc_hostname=args.get("plc_hostname"),
                    handle_resolver=args.get("handle_resolver"),
                )
                print(f"resolved {resolved}")
                if args.get("discover"):
                    metadata = await discover_auth_server(session, resolved.pds)
                    print(f"issuer {metadata.issuer}")
                    print(f"par_endpoint {metadata.par_endpoint}")
            except ATProtoError:
                logger.exception("Exception resolving subject %s", subject)


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
