"""MailPilot: learns habitual mailbox behavior and automates it safely."""

__version__ = "0.1.0"
