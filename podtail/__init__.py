"""
podtail
Tail and merge logs from many Kubernetes pods, following workloads as they scale
"""

__version__ = "0.1.0"
__author__ = "podtail developers"
__description__ = "Multi-pod Kubernetes log tailer with live pod discovery"
