"""GitHub OAuth and GitHub App integration."""
