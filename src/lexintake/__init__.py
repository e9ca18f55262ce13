"""Fleet supervisor for WhatsApp legal-intake assistants."""

__version__ = "0.3.0"
