"""
tether - idempotent deployment of Open WebUI on GKE.

Reconciles cloud infrastructure, cluster objects and Helm releases against
a desired state, provisions TLS certificates and backs up / restores the
application database through Cloud Storage.
"""

__version__ = "0.1.0"
