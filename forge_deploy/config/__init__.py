from forge_deploy.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
