"""PhishShield agent: phishing-risk scoring and a hash-chained report ledger."""
