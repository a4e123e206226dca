"""AWS Governance Baseline - Main Package.

This package bootstraps and maintains a governed multi-account AWS
environment: security services enabled consistently across every
account and region, and foundational resources created exactly once.
"""

__version__ = "1.0.0"
__author__ = "AWS Governance Baseline Team"
