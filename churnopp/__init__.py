# ChurnOpp - Behavioral Churn Signal Engine
"""
ChurnOpp collects behavioral signals from browser sessions, relays them to
a collector endpoint with bounded retries, and turns the accumulated event
history into a per-user churn-risk score that triggers alerts.
"""

__version__ = "0.1.0"
