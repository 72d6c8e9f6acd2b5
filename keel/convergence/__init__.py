"""
Converging declared resources with what the state store records.
"""
