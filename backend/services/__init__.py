"""
CRM Migration Hub - Services Package
"""
