"""Shared test helpers."""

from __future__ import annotations

from dhcp_template.models import Interface, Lease4, Lease6, Node, Prefix6


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_node(name: str, dns: str = "192.0.2.53") -> Node:
    return Node(
        name=name,
        interfaces=[
            Interface(
                name="eth0",
                lease4=Lease4(dns=[dns], domain="example.org"),
                lease6=Lease6(
                    dns=["2001:db8::53"],
                    prefixes=[Prefix6(ip="2001:db8:1::", len=56)],
                ),
            )
        ],
    )
