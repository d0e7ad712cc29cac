"""Pure domain types shared by engines, modules and services."""
