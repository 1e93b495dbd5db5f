"""
Core Django project package for the OTA update server.
"""
