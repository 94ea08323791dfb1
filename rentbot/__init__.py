"""WhatsApp conversational webhook for the rental-listings marketplace."""

__version__ = "1.0.0"
