"""Host provisioner — converge a host to Docker + Ollama + Open WebUI."""

__version__ = "0.1.0"
