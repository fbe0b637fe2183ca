"""Google Calendar integration: tokens, client, availability, resolver, tool layer."""
