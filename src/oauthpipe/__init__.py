"""oauthpipe -- Run multi-step OAuth 1.0a and OAuth 2.0 flows from configuration.

One :class:`~oauthpipe.models.EngineConfig` describes, per provider, the
requests to issue before and after the redirect to the provider's
authorization page: how each parameter is computed, how each response is
validated and what is extracted from it.  The engine executes those steps,
keeps a ledger of every request and response, and carries it across the
redirect.

Typical wiring::

    config = load_config("oauth.yaml")
    client = OAuthClient(config, redirector=my_redirector)
    await client.handle_login_click("github")
    ...
    server = OAuthServer(config)
    await server.get_user(body)

Modules:
    models: Pydantic configuration models, fetch records and the ledger.
    values: The four kinds of parameter value.
    resolver: Resolves parameter maps against the ledger.
    executor: Sends one request with timeout, proxy and retries.
    pipeline: Runs the steps of a stage.
    bridge: Persists the ledger across the redirect.
    client: Login click and redirect completion.
    server: get_user, helper_function and use_proxy.
    config: Loading configuration files.
    exceptions: Exception hierarchy.
"""

__version__ = "0.1.0"
