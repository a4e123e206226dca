"""Account/region fan-out with bounded concurrency."""
