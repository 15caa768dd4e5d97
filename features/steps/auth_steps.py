import asyncio
import json

from behave import given, when, then

from fake_api import BASE_URL, FakeApi, VirtualClock
from src.guard.errors import AuthError
from src.sut.auth import Authenticator, StaticAuthenticator

TOKEN_PATH = "/oauth/token"


def _token_api(context, delay=0.0):
    if context.api is None:
        context.api = FakeApi(delay=delay)
        context.clock = VirtualClock()
        context.refresh_margin = 30.0
        context.static_token = None
    return context.api


def _authenticator(context, http):
    if context.static_token:
        return StaticAuthenticator(context.static_token)
    return Authenticator(
        http,
        BASE_URL + TOKEN_PATH,
        username="qa",
        password="s3cret",
        refresh_margin=context.refresh_margin,
        clock=context.clock,
    )


@given("the token endpoint answers with")
def step_token_answers(context):
    _token_api(context).add("POST", TOKEN_PATH, 200, json.loads(context.text))


@given("the token endpoint answers slowly with")
def step_token_answers_slowly(context):
    _token_api(context, delay=0.02).add("POST", TOKEN_PATH, 200, json.loads(context.text))


@given("the token endpoint answers {status:d} with")
def step_token_answers_status(context, status):
    _token_api(context).add("POST", TOKEN_PATH, status, json.loads(context.text))


@given("a refresh margin of {seconds:d} seconds")
def step_refresh_margin(context, seconds):
    context.refresh_margin = float(seconds)


@given('a pre-issued token "{bearer}"')
def step_static_token(context, bearer):
    _token_api(context)
    context.static_token = bearer


@when("{count:d} callers ask for a token at the same time")
def step_concurrent_callers(context, count):
    async def scenario():
        async with context.api.http() as http:
            authenticator = _authenticator(context, http)
            tokens = await asyncio.gather(*(authenticator.get_valid_token() for _ in range(count)))
            return tokens

    context.tokens = asyncio.run(scenario())


@when("a token is requested at {seconds:d} seconds")
def step_token_at(context, seconds):
    # one authenticator per scenario, kept across steps
    if not hasattr(context, "authenticator"):
        context.http = context.api.http()
        context.authenticator = _authenticator(context, context.http)
    context.clock.now = float(seconds)
    context.error = None
    try:
        context.token = asyncio.run(context.authenticator.get_valid_token())
    except AuthError as e:
        context.error = e


@when('a token is obtained for user "{username}" with password "{password}"')
def step_token_for_user(context, username, password):
    async def scenario():
        async with context.api.http() as http:
            return await _authenticator(context, http).authenticate(username=username, password=password)

    context.token = asyncio.run(scenario())


@then("the token endpoint was called {count:d} time")
@then("the token endpoint was called {count:d} times")
def step_token_calls(context, count):
    assert context.api.count("POST", TOKEN_PATH) == count, context.api.calls


@then('every caller got the bearer "{bearer}"')
def step_every_caller(context, bearer):
    assert context.tokens and all(t.bearer == bearer for t in context.tokens), context.tokens


@then('the token request form contains "{pair}"')
def step_form_contains(context, pair):
    body = context.api.body_of("POST", TOKEN_PATH)
    assert isinstance(body, str) and pair in body.split("&"), body


@then("authentication fails with status {status:d}")
def step_auth_fails_status(context, status):
    assert isinstance(context.error, AuthError), context.error
    assert context.error.status == status, context.error.status


@then('authentication fails mentioning "{text}"')
def step_auth_fails_text(context, text):
    assert isinstance(context.error, AuthError), context.error
    assert text in str(context.error), str(context.error)


@then('the last token is "{bearer}"')
def step_last_token(context, bearer):
    assert context.error is None, context.error
    assert context.token.bearer == bearer, context.token
