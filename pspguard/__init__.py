"""pspguard - PodSecurityPolicy baseline reconciler for multi-cloud Kubernetes."""

__version__ = "0.1.0"
