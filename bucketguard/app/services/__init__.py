"""Services for bucketguard."""
