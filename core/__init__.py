"""Core types, events and exceptions shared by every package."""
