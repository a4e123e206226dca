"""Core components for the governance baseline.

This module contains the foundational components including AWS client
management, error classification and retry, credential brokering,
boundary resolution, configuration handling and operation logging.
"""
