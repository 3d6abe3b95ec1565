"""
cloudlibs: durable cross-process signalling and supervised script cohorts
for appliance onboarding and clustering.
"""

__version__ = "1.0.0"
