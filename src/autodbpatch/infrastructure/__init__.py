"""
Infrastructure layer package.

Contains all I/O and external system integrations:
- Configuration file loading (config_loader)
- Logging setup (logging_config)
- Build reference cache and refresh (build_store)
- Microsoft Update Catalog downloads (catalog)
- WinRM remoting and authentication negotiation (psremote/)
"""
