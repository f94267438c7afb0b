"""capgate command line."""
