"""dotd: a UDP DNS proxy that answers locally or forwards to DoH upstreams."""

__version__ = "0.1.0"
