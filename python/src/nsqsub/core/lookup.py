"""
Host lookup: resolve which nsqd hosts carry a topic.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Union


class Lookup(ABC):

    @abstractmethod
    def lookup_hosts(self, topic: str) -> List[str]:
        """Return "host:port" strings for nsqd instances carrying topic."""


class FixedHosts(Lookup):
    """The same static host list for every topic."""

    def __init__(self, hosts: Union[str, Iterable[str]]):
        if isinstance(hosts, str):
            hosts = hosts.split(",")
        self.hosts = [h.strip() for h in hosts if h and h.strip()]

    def lookup_hosts(self, topic: str) -> List[str]:
        return list(self.hosts)
