"""
keel: declarative resource convergence and fleet autoscaling.
"""
