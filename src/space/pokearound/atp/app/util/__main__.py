import argparse
import asyncio
import base64
import json
import logging
from typing import Optional
import aiohttp
from cryptography.fernet import Fernet

from space.pokearound.atp.app.config import Settings
from space.pokearound.atp.atproto.jwt import generate_dpop_key, serialize_dpop_key
from space.pokearound.atp.atproto.oauth import start_authorization
from space.pokearound.atp.atproto.tid import TIDGenerator, to_datetime

logger = logging.getLogger(__name__)


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def genDpopKey() -> None:
    dpop_key, _ = generate_dpop_key()
    print(json.dumps(serialize_dpop_key(dpop_key)["public"]))


async def genTid(count: int, clock_id: Optional[int]) -> None:
    generator = TIDGenerator(clock_id)
    for _ in range(count):
        print(generator.generate())


async def decodeTid(tid: str) -> None:
    print(to_datetime(tid).isoformat())


async def authorize(subject: str, redirect_uri: Optional[str]) -> None:
    settings = Settings()  # type: ignore
    async with aiohttp.ClientSession() as http_session:
        auth_state = await start_authorization(
            http_session, settings, subject, redirect_uri=redirect_uri
        )
    print(f"state {auth_state.state}")
    print(f"authorization_url {auth_state.authorization_url}")


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="pokearound-util", description="PokeAround AT Protocol utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")
    _ = subparsers.add_parser("gen-dpop-key", help="Generate a DPoP key and print its public JWK")

    gen_tid = subparsers.add_parser("tid", help="Generate TIDs")
    gen_tid.add_argument("--count", type=int, default=1, help="How many TIDs to generate.")
    gen_tid.add_argument("--clock-id", type=int, default=None, help="Fixed 10-bit clock id.")

    decode_tid = subparsers.add_parser("decode-tid", help="Print the timestamp of a TID")
    decode_tid.add_argument("tid", help="The TID to decode.")

    authorize_parser = subparsers.add_parser(
        "authorize", help="Start an OAuth login and print the authorization URL"
    )
    authorize_parser.add_argument("subject", help="Handle or DID to log in as.")
    authorize_parser.add_argument("--redirect-uri", default=None, help="Callback URL.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-crypto":
        await genCryptoKey()
    elif command == "gen-dpop-key":
        await genDpopKey()
    elif command == "tid":
        await genTid(args.get("count", 1), args.get("clock_id", None))
    elif command == "decode-tid":
        await decodeTid(args.get("tid", ""))
    elif command == "authorize":
        await authorize(args.get("subject", ""), args.get("redirect_uri", None))


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
