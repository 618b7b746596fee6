"""
Monitoring: Prometheus export of settlement metrics.
"""
