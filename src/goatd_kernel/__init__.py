"""GOATd kernel build-script patch engine."""

__version__ = "0.1.0"
