"""Core domain package for hookrelay.

Core contains rule validation, matching, payload building, delivery and
history logic without any storage or HTTP-library specific code, keeping the
business logic portable.
"""
