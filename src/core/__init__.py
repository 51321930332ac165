"""Core domain package for socialwatch.

Core contains routing, deduplication, throttling, configuration and
supervision logic without any Telegram or storage-specific code, keeping the
orchestration portable across platforms and transports.
"""
