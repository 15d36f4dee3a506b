from django.dispatch import Signal

# Sent once per newly stored message, after the transaction commits.
# Receivers get `email_message` and `user`; the enrichment pipeline
# (contacts, companies, tasks) hangs off this.
email_imported = Signal()
