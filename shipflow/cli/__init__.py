"""ShipFlow operator CLI."""
