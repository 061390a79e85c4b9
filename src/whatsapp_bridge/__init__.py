"""
WhatsApp CRM Bridge

Moves messages between Evolution API WhatsApp instances and CRM
conversations, and reconciles delivery status across the two.
"""
