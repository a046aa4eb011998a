# HRMS QR Check-in Service - Modules Package
"""
Core modules of the QR check-in service: payload model, encoder, validator,
replay cache, dispatcher and the SQLite-backed datastore they write through.
"""
