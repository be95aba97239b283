"""Pre-key bundle directory service used by e2ee.HttpBundleDirectory."""
