import os
import sys
import enum
import stat
import hashlib
import json
import zlib
import argparse
import logging
import tempfile

from pathlib import Path
from typing import Optional, Union
from construct import ConstructError
from httpx import HTTPError
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Finalized
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey
from anchorpy.idl import IDL_ACCOUNT_LAYOUT

IDL_SEED = "anchor:idl"
ACCOUNT_DISCRIMINATOR_SIZE = 8
IDL_ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:IdlAccount").digest()[:ACCOUNT_DISCRIMINATOR_SIZE]


class Cluster(enum.Enum):
    MAINNET = "https://api.mainnet-beta.solana.com"
    DEVNET = "https://api.devnet.solana.com"
    TESTNET = "https://api.testnet.solana.com"
    LOCALNET = "http://127.0.0.1:8899"

    @property
    def url(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> "Cluster":
        normalized = name.strip().upper().replace("-BETA", "")
        try:
            return cls[normalized]
        except KeyError:
            choices = ", ".join(c.name.lower() for c in cls)
            raise ValueError(f"Unknown cluster '{name}' (expected one of: {choices})") from None


# ------ #
# Errors #
# ------ #

class IdlFetchError(Exception):
    """Base class for every failure of the fetch pipeline."""


class InvalidAddressError(IdlFetchError):
    pass


class NetworkError(IdlFetchError):
    pass


class IdlNotFoundError(IdlFetchError):
    pass


class NotAProgramError(IdlFetchError):
    pass


class IdlDecodeError(IdlFetchError):
    pass


class UnknownClusterError(IdlFetchError):
    pass


class OutputWriteError(IdlFetchError):
    pass


# ---------------- #
# Helper functions #
# ---------------- #

def pako_inflate(data):
    decompress = zlib.decompressobj(15)
    decompressed_data = decompress.decompress(data)
    decompressed_data += decompress.flush()
    return decompressed_data


def parse_program_address(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as err:
        raise InvalidAddressError(f"'{address}' is not a valid public key: {err}") from err


def resolve_endpoint(cluster: Union[Cluster, str]) -> str:
    """Map a cluster (enum, name or explicit RPC URL) to an RPC endpoint."""
    if isinstance(cluster, Cluster):
        return cluster.url
    if cluster.startswith(("http://", "https://")):
        return cluster
    try:
        return Cluster.from_name(cluster).url
    except ValueError as err:
        raise UnknownClusterError(str(err)) from err


def resolve_idl_address(program_id: Pubkey) -> Pubkey:
    base = Pubkey.find_program_address([], program_id)[0]
    return Pubkey.create_with_seed(base, IDL_SEED, program_id)


def output_path(address: str, output_dir: Optional[Union[str, Path]] = None) -> Path:
    directory = Path(output_dir) if output_dir is not None else Path.cwd()
    return directory / f"{address}.json"


# Anchor IDL account layout:
# - 8 bytes account discriminator
# - 32 bytes authority
# - u32 length + zlib-compressed JSON
def decode_idl_account(data: bytes) -> dict:
    if len(data) <= ACCOUNT_DISCRIMINATOR_SIZE:
        raise IdlDecodeError(f"IDL account data too short ({len(data)} bytes)")
    if bytes(data[:ACCOUNT_DISCRIMINATOR_SIZE]) != IDL_ACCOUNT_DISCRIMINATOR:
        raise IdlDecodeError("IDL account has the wrong discriminator")

    try:
        account = IDL_ACCOUNT_LAYOUT.parse(bytes(data[ACCOUNT_DISCRIMINATOR_SIZE:]))
    except ConstructError as err:
        raise IdlDecodeError(f"IDL account data truncated: {err}") from err

    try:
        raw_idl = pako_inflate(bytes(account.data))
    except zlib.error as err:
        raise IdlDecodeError(f"Failed to inflate IDL data: {err}") from err

    try:
        idl = json.loads(raw_idl.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise IdlDecodeError(f"Failed to parse IDL data: {err}") from err

    if not isinstance(idl, dict):
        raise IdlDecodeError(f"IDL must be a JSON object, got {type(idl).__name__}")
    return idl


def get_account(client: Client, address: Pubkey):
    try:
        return client.get_account_info(address, commitment=Finalized).value
    except (SolanaRpcException, RPCException, HTTPError) as err:
        # SolanaRpcException carries no message of its own, only the wrapped transport error
        detail = str(err) or repr(err.__cause__ or err)
        raise NetworkError(f"RPC request for {address} failed: {detail}") from err


# -------------- #
# Fetch pipeline #
# -------------- #

def fetch_idl(program_id: Pubkey, client: Client, check_executable: bool = True) -> dict:
    if check_executable:
        program_account = get_account(client, program_id)
        if program_account is None:
            raise IdlNotFoundError(f"Program account {program_id} does not exist")
        if not program_account.executable:
            raise NotAProgramError(f"{program_id} does not correspond to an executable program")

    idl_address = resolve_idl_address(program_id)
    logging.debug(f"Fetching IDL account {idl_address} for program {program_id} ...")
    idl_account = get_account(client, idl_address)
    if idl_account is None:
        raise IdlNotFoundError(f"No IDL account found for program {program_id}")

    return decode_idl_account(idl_account.data)


def target_mode(path: Path) -> int:
    # An existing file keeps its mode; a new one gets the umask default, like open(..., "w").
    if path.exists():
        return stat.S_IMODE(path.stat().st_mode)
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def write_idl(idl: dict, path: Union[str, Path]) -> Path:
    """Write the IDL as pretty-printed JSON.

    The document goes to a temporary file next to ``path`` which then replaces
    it, so a failed write never leaves a partial ``path`` behind.
    """
    path = Path(path)
    content = json.dumps(idl, indent=2, ensure_ascii=False) + "\n"
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp",
                delete=False) as f:
            tmp_name = f.name
            f.write(content)
        os.chmod(tmp_name, target_mode(path))
        os.replace(tmp_name, path)
    except OSError as err:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise OutputWriteError(f"Could not write {path}: {err}") from err
    return path


def generate_local_idl(
        address: str,
        cluster: Union[Cluster, str],
        client: Optional[Client] = None,
        output_dir: Optional[Union[str, Path]] = None,
        check_executable: bool = True,
) -> Path:
    program_id = parse_program_address(address)
    if client is None:
        client = Client(resolve_endpoint(cluster), commitment=Finalized)

    idl = fetch_idl(program_id, client, check_executable=check_executable)
    path = write_idl(idl, output_path(address, output_dir))
    logging.info(f"IDL successfully saved to {path}")
    return path


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fetch an on-chain Anchor IDL into <program_id>.json")
    parser.add_argument("--program_id", required=True, help="Target program ID")
    parser.add_argument("--cluster", default="devnet",
                        help="Cluster: mainnet, devnet, testnet or localnet")
    parser.add_argument("--rpc_endpoint", required=False, help="RPC endpoint (overrides --cluster)")
    parser.add_argument("--out_dir", required=False, help="Output directory (default: current directory)")
    parser.add_argument("--skip_program_check", action="store_true",
                        help="Do not check that the address is an executable program")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(format="%(levelname)s %(message)s")
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else logging.INFO)

    try:
        endpoint = resolve_endpoint(args.rpc_endpoint or args.cluster)
    except UnknownClusterError as err:
        logging.error(str(err))
        return 1

    try:
        generate_local_idl(args.program_id, endpoint, output_dir=args.out_dir,
                           check_executable=not args.skip_program_check)
    except IdlFetchError as err:
        logging.error(f"{type(err).__name__}: {err}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
