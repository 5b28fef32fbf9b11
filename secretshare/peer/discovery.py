import socket
import time

from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from secretshare.log import get_logger
from secretshare.peer.broadcast import SERVICE_TYPE
from secretshare.protocol.errors import SecretShareError

logger = get_logger(__name__)


class PeerNotFound(SecretShareError):
    pass


class DiscoveryListener(ServiceListener):
    def __init__(self):
        self.peers = {}

    def add_service(self, zc, type_, name):
        info = zc.get_service_info(type_, name)
        if info and info.addresses:
            ip = socket.inet_ntoa(info.addresses[0])
            peer_name = name.split('.')[0]
            self.peers[peer_name] = (ip, info.port)
            logger.info(f"Found peer: {peer_name} at {ip}:{info.port}")

    def update_service(self, zc, type_, name):
        self.add_service(zc, type_, name)

    def remove_service(self, zc, type_, name):
        peer_name = name.split('.')[0]
        if self.peers.pop(peer_name, None) is not None:
            logger.info(f"Peer left: {peer_name}")


class Discovery:
    def __init__(self, discovery_timeout, zeroconf_factory=Zeroconf, browser_factory=ServiceBrowser):
        self.zeroconf_factory = zeroconf_factory
        self.browser_factory = browser_factory
        self.peer_listener = DiscoveryListener()
        self.zeroconf = None
        self.browser = None
        self.discovery_timeout = discovery_timeout

    def start_service(self):
        # watches local network for hosting peers
        logger.info("Discovery started...")
        self.zeroconf = self.zeroconf_factory()
        self.browser = self.browser_factory(self.zeroconf, SERVICE_TYPE, self.peer_listener)
        time.sleep(self.discovery_timeout)

    def get_peers(self):
        return dict(self.peer_listener.peers)

    def resolve(self, peer_name):
        """Browse for ``discovery_timeout`` seconds and return the peer's (ip, port)."""
        self.start_service()
        try:
            peers = self.get_peers()
        finally:
            self.stop()
        try:
            return peers[peer_name]
        except KeyError:
            known = ", ".join(sorted(peers)) or "none"
            raise PeerNotFound(f"Peer '{peer_name}' not found (discovered: {known})") from None

    def stop(self):
        if self.zeroconf is not None:
            self.zeroconf.close()
            self.zeroconf = None
