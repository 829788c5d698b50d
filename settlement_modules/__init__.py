"""
settlement_modules -- persistence-backed business modules.

``invoicing``: clients, quotes, invoices, credit notes and the invoice
status controller.  ``followup``: the follow-up (reminder) campaign
scheduler and dispatcher.
"""
