# Core modules for ab_av1
