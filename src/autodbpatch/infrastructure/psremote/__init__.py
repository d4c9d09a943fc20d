"""
PowerShell remoting.

- client: pywinrm session wrapper with localhost bypass
- channel: Channel implementation over a client session
- negotiator: Per-host authentication negotiation with CredSSP fallback
- backend: WinRMHostBackend, the production HostBackend
"""
