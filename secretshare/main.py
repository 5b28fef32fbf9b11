#main.py  ==  secretshare command line
           #↳ host mode: offers one file to whoever passes the handshake
           #↳ client mode: connects, proves its GPG identity, fetches the file
import argparse
import sys

from secretshare import APP_NAME, __version__
from secretshare.config import load_config, validate_config
from secretshare.crypto.encrypt import GPGCipher
from secretshare.crypto.identity import GPGIdentityProvider
from secretshare.log import set_debug
from secretshare.peer.discovery import Discovery
from secretshare.peer.peer import Peer
from secretshare.protocol.consent import TerminalConsent
from secretshare.protocol.errors import (
    ConfigError,
    HandshakeRejected,
    SecretShareError,
    TransferDeclined,
)

EXIT_OK = 0
EXIT_HANDSHAKE_REJECTED = 1
EXIT_TRANSFER_DECLINED = 2
EXIT_FAILURE = 3

EPILOG = f"""\
Host Usage: Run '{APP_NAME} -sp <SOURCE_PORT> -file <FILE_PATH>' to share a file.
Client Usage: Run '{APP_NAME} -d <HOST:PORT>' (or '--peer <NAME>') to connect and receive the file.

Example:
  Host:   {APP_NAME} -sp 8080 -file /path/to/secret.txt
  Client: {APP_NAME} -d 192.168.1.20:8080
"""


def parse_address(value):
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    try:
        port = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in {value!r}") from None
    if not 0 < port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range in {value!r}")
    return host.strip("[]"), port


def build_parser():
    ap = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Share secrets through a P2P connection",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument("-sp", "--source-port", type=int, default=None, help="Source port number")
    ap.add_argument("-d", "--dest", type=parse_address, default=None, help="Destination HOST:PORT")
    ap.add_argument("--peer", default=None, help="Destination peer name, discovered over mDNS")
    ap.add_argument("-file", "--file", dest="file_path", default=None,
                    help="Path to file to share (host only)")
    ap.add_argument("--out", default=None, help="Directory to save the received file (client only)")
    ap.add_argument("--config", default=None, help="YAML configuration file (default: ./config.yaml)")
    ap.add_argument("--debug", action="store_true", help="Verbose protocol logging")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def run_host(config, file_path, identity_provider, cipher, consent):
    peer = Peer(config, identity_provider, cipher, consent)
    ip, port = peer.start_service(file_path)
    print(f"Share this address: {ip}:{port}")
    try:
        peer.wait()
    except KeyboardInterrupt:
        print("\nInterrupted. Exiting")
    finally:
        peer.shutdown()
    return EXIT_OK


def run_client(config, address, identity_provider, cipher, consent):
    peer = Peer(config, identity_provider, cipher, consent)
    try:
        received = peer.fetch(address)
    except HandshakeRejected as e:
        print(f"[✗] The host did not accept your identity: {e}")
        return EXIT_HANDSHAKE_REJECTED
    except TransferDeclined as e:
        print(f"[✗] File transfer declined: {e}")
        return EXIT_TRANSFER_DECLINED
    except SecretShareError as e:
        print(f"[!] Error: {e}")
        return EXIT_FAILURE
    print(f"[✓] File saved to {received.path}")
    return EXIT_OK


def main(argv=None):
    ap = build_parser()
    args = ap.parse_args(argv)
    set_debug(args.debug)

    try:
        config = load_config(args.config)
        if args.source_port is not None:
            config["listen_port"] = args.source_port
        if args.out is not None:
            config["download_dir"] = args.out
        validate_config(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    is_host = args.dest is None and args.peer is None
    if is_host and not args.file_path:
        print("Error: Host mode requires a file to share. Use -file flag.", file=sys.stderr)
        print(f"Run '{APP_NAME} -h' for usage information.", file=sys.stderr)
        return EXIT_FAILURE
    if args.dest is not None and args.peer is not None:
        print("Error: use either -d or --peer, not both.", file=sys.stderr)
        return EXIT_FAILURE

    identity_provider = GPGIdentityProvider(config["gpg_binary"], config["gnupg_home"])
    cipher = GPGCipher(config["gpg_binary"], config["gnupg_home"])
    consent = TerminalConsent()

    if is_host:
        return run_host(config, args.file_path, identity_provider, cipher, consent)

    address = args.dest
    if address is None:
        try:
            address = Discovery(config["discovery_timeout"]).resolve(args.peer)
        except SecretShareError as e:
            print(f"[!] {e}")
            return EXIT_FAILURE
    return run_client(config, address, identity_provider, cipher, consent)


if __name__ == "__main__":
    sys.exit(main())
