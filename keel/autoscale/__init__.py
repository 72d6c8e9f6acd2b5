"""
Autoscaling of fleets from a load metric.
"""
