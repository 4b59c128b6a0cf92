"""
IKS Ingress migrator
Converts ingress.bluemix.net annotated resources into community nginx Ingress resources
"""

__version__ = '0.1.0'
