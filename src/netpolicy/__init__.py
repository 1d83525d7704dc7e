"""netpolicy: infer network access policies from observed traffic."""

__version__ = "0.3.0"
