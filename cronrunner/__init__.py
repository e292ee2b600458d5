"""Schedule headless CLI jobs, run them single-flight with retries, and track their history."""

__version__ = "0.1.0"
