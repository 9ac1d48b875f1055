"""
Services package - runtime assembly and settings.

Import specific modules directly:
    from services.settings import RuntimeSettings
    from services.chat_runtime import start_chat_runtime
"""

# Don't import modules here to avoid circular imports.
# Consumers should import from submodules directly.
