"""convmem - durable conversation memory with rolling summaries."""

__version__ = "0.3.0"
__logo__ = "📜"
