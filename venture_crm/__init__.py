# venture_crm/__init__.py
"""
Venture CRM application package.
"""
