class StartupError(RuntimeError):
    """A collaborator needed before traffic processing could not be queried."""
