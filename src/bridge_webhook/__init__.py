"""HTTP receivers for the WhatsApp CRM bridge."""
