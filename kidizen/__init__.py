"""
Kidizen Science API.

A FastAPI service where teachers create citizen-science projects and their
students submit observations. Entities live in a transactional store behind
the `EntityStore` interface, images in object storage behind `BlobStorage`.
"""
