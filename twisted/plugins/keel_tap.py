"""
keel twisted application plugin.
"""

from twisted.application.service import ServiceMaker

Keel = ServiceMaker(
    "keel convergence and autoscaling node.",
    "keel.tap.api",
    "Converge declared resources and autoscale fleets",
    "keel"
)
