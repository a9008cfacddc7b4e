"""Upload pipeline services: validation, multipart streaming, storage."""
