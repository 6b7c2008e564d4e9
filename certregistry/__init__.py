# certregistry/__init__.py
