import socket

from zeroconf import ServiceInfo, Zeroconf

from secretshare import __version__
from secretshare.log import get_logger

logger = get_logger(__name__)

SERVICE_TYPE = "_secretshare._tcp.local."


def local_ip():
    hostname = socket.gethostname()
    try:
        ip_addr = socket.gethostbyname(hostname)
    except OSError as e:
        logger.warning(f"Could not get local IP: {e}, using 127.0.0.1")
        return "127.0.0.1"
    return ip_addr


class Broadcast():
    def __init__(self, peer_name, port, zeroconf_factory=Zeroconf):
        self.peer_name = peer_name
        self.port = port
        self.zeroconf_factory = zeroconf_factory
        self.zeroconf = None
        self.service_info = None

    # Announces a hosting peer over mDNS
    def start_service(self, ip_addr=None):
        hostname = socket.gethostname()
        ip_addr = ip_addr or local_ip()

        self.service_info = ServiceInfo(
            type_=SERVICE_TYPE,
            name=f"{self.peer_name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(ip_addr)],
            port=self.port,
            properties={"version": __version__},
            server=f"{hostname}.local.",
        )

        logger.info(f"Broadcasting at {self.peer_name}:{self.port}")
        self.zeroconf = self.zeroconf_factory()
        self.zeroconf.register_service(self.service_info)

    def stop_service(self):
        if self.zeroconf is None:
            return
        if self.service_info:
            self.zeroconf.unregister_service(self.service_info)
        self.zeroconf.close()
        self.zeroconf = None
