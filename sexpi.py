import re
import math
import logging
import argparse
import traceback
from sys import stdin
from contextlib import contextmanager
from typing import Union, Optional, Callable, Iterable, Iterator, Sequence, Tuple

logger = logging.getLogger(__name__)

TRUE = '#t'
FALSE = '#f'
PI = 3.14
NATIVE_ARITY = 2
SPECIAL_FORMS = frozenset({'define', 'lambda', 'if'})

class SexpiError(RuntimeError):
  kind = 'Error'

  def __init__(self, message: str):
    super().__init__(message)
    self.message = message

class ParseError(SexpiError):
  kind = 'ParseError'

class UnmatchedCloseParenError(ParseError):
  kind = 'UnmatchedCloseParen'

  def __init__(self, message: str, *, position: int):
    super().__init__(message)
    self.position = position

class UnclosedParenError(ParseError):
  kind = 'UnclosedParen'

  def __init__(self, message: str, *, depth: int):
    super().__init__(message)
    self.depth = depth

class Symbol:
  def __init__(self, value: str):
    self.value = value

  def __repr__(self) -> str:
    return f'Symbol("{self.value}")'

  def __str__(self) -> str:
    return self.external()

  def __hash__(self) -> int:
    return hash(self.value)

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, Symbol):
      return False
    return o.value == self.value

  def external(self) -> str:
    return self.value

def format_number(x: float) -> str:
  if math.isfinite(x) and x.is_integer():
    return str(int(x))
  return repr(x)

class Number:
  def __init__(self, value: float):
    self.value = value

  def __repr__(self) -> str:
    return f'Number({self.value!r})'

  def __str__(self) -> str:
    return self.external()

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, Number):
      return False
    return o.value == self.value

  def external(self) -> str:
    return format_number(self.value)

class SList:
  def __init__(self, items: Iterable['Sexpr']=()):
    self.items: Tuple['Sexpr', ...] = tuple(items)

  def __repr__(self) -> str:
    return f'SList({list(self.items)!r})'

  def __str__(self) -> str:
    return self.external()

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, SList):
      return False
    return o.items == self.items

  def __iter__(self) -> Iterator['Sexpr']:
    return iter(self.items)

  def __len__(self) -> int:
    return len(self.items)

  def __getitem__(self, i):
    return self.items[i]

  def external(self) -> str:
    inner = ' '.join(x.external() for x in self.items)
    return f'({inner})'

Sexpr = Union[Symbol, Number, SList]

class Value:
  def __init__(self, value: Union[bool, float]):
    self.value = value

  def __repr__(self) -> str:
    return f'Value({self.value!r})'

  def __str__(self) -> str:
    return self.external()

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, Value):
      return False
    # Bool and Float are distinct kinds even though True == 1.0 in Python
    return o.is_bool() == self.is_bool() and o.value == self.value

  def is_bool(self) -> bool:
    return isinstance(self.value, bool)

  def external(self) -> str:
    if self.is_bool():
      return TRUE if self.value else FALSE
    return format_number(self.value)

class NativeFunction:
  def __init__(self, fn: Callable[..., 'RuntimeValue'], name: str):
    self.fn = fn
    self.name = name

  def __repr__(self) -> str:
    return f'NativeFunction({self.name})'

  def __str__(self) -> str:
    return self.external()

  def external(self) -> str:
    return f'<builtin:{self.name}>'

class Procedure:
  def __init__(self, params: list[str], body: Sexpr, env: 'Env'):
    self.params = params
    self.body = body
    self.env = env

  def __repr__(self) -> str:
    return f'Procedure({self.params!r}, {self.body!r})'

  def __str__(self) -> str:
    return self.external()

  def external(self) -> str:
    return f'<lambda ({" ".join(self.params)})>'

RuntimeValue = Union[Value, NativeFunction, Procedure]

class EvalError(SexpiError):
  kind = 'HostError'

  def __init__(self, message: str, *, callstack: Optional[list[Tuple['Env', Sexpr]]]=None):
    super().__init__(message)
    self.callstack = callstack

class UnboundSymbolError(EvalError):
  kind = 'UnboundSymbol'

  def __init__(self, message: str, *, symbol: str):
    super().__init__(message)
    self.symbol = symbol

class NotCallableError(EvalError):
  kind = 'NotCallable'

class ArityMismatchError(EvalError):
  kind = 'ArityMismatch'

  def __init__(self, message: str, *, expected: int, got: int):
    super().__init__(message)
    self.expected = expected
    self.got = got

class EmptyApplicationError(EvalError):
  kind = 'EmptyApplication'

class TypeMismatchError(EvalError):
  kind = 'TypeMismatch'

class MalformedFormError(EvalError):
  kind = 'MalformedSpecialForm'

class RecursionDepthError(EvalError):
  kind = 'RecursionDepthExceeded'

class Env:
  names: dict[str, RuntimeValue]
  callstack: list[Tuple['Env', Sexpr]]
  parent: Optional['Env']

  def __init__(self, *, names: Optional[dict[str, RuntimeValue]]=None, callstack: Optional[list[Tuple['Env', Sexpr]]]=None, parent: Optional['Env'] = None):
    self.names = names if names is not None else {}
    self.callstack = callstack if callstack is not None else []
    self.parent = parent

  def child(self) -> 'Env':
    return Env(callstack=self.callstack, parent=self)

  def define(self, name: str, value: RuntimeValue):
    self.names[name] = value
    return self

  def lookup(self, name: str) -> Optional[RuntimeValue]:
    env: Optional[Env] = self
    while env is not None:
      if name in env.names:
        return env.names[name]
      env = env.parent
    return None

  @contextmanager
  def log_call(self, sexpr: Sexpr):
    self.callstack.append((self, sexpr))
    try:
      yield self
    except EvalError as e:
      if e.callstack is None:
        e.callstack = self.callstack.copy()
      raise
    except RecursionError as e:
      raise RecursionDepthError('maximum recursion depth exceeded', callstack=self.callstack.copy()) from e
    except Exception as e:
      raise EvalError(str(e), callstack=self.callstack.copy()) from e
    finally:
      self.callstack.pop()

  @staticmethod
  def from_functions(functions: dict[str, Callable[..., RuntimeValue]]) -> 'Env':
    names: dict[str, RuntimeValue] = {k: NativeFunction(v, k) for k, v in functions.items()}
    return Env(names=names)

def assert_not_none(x: Optional[RuntimeValue]) -> RuntimeValue:
  if x is None:
    raise TypeMismatchError('expression did not evaluate to any value')
  return x

def assert_name(x: Sexpr, form: str) -> str:
  if not isinstance(x, Symbol):
    raise MalformedFormError(f'{form}: {x.external()} must be a symbol')
  if x.value in SPECIAL_FORMS:
    raise MalformedFormError(f'{form}: {x.value} is a reserved keyword')
  return x.value

def numeric_value(x: RuntimeValue) -> float:
  if not isinstance(x, Value) or x.is_bool():
    raise TypeMismatchError(f'argument must be a number, was {x.external()}')
  return x.value

def is_truthy(x: RuntimeValue) -> bool:
  if not isinstance(x, Value):
    raise TypeMismatchError(f'condition must be a number or boolean, was {x.external()}')
  if x.is_bool():
    return x.value
  return x.value != 0

def divide(a: float, b: float) -> float:
  try:
    return a / b
  except ZeroDivisionError:
    # IEEE-754 results instead of Python's exception
    if a == 0 or math.isnan(a):
      return math.nan
    return math.copysign(math.inf, a) * math.copysign(1.0, b)

builtin_functions: dict[str, Callable[[RuntimeValue, RuntimeValue], RuntimeValue]] = {
  '+': lambda a, b: Value(numeric_value(a) + numeric_value(b)),
  '-': lambda a, b: Value(numeric_value(a) - numeric_value(b)),
  '*': lambda a, b: Value(numeric_value(a) * numeric_value(b)),
  '/': lambda a, b: Value(divide(numeric_value(a), numeric_value(b))),
  '<': lambda a, b: Value(numeric_value(a) < numeric_value(b)),
  '<=': lambda a, b: Value(numeric_value(a) <= numeric_value(b)),
  '>': lambda a, b: Value(numeric_value(a) > numeric_value(b)),
  '>=': lambda a, b: Value(numeric_value(a) >= numeric_value(b)),
}

def standard_env() -> Env:
  return Env.from_functions(builtin_functions).define('pi', Value(PI))

token_pattern = re.compile(r'[()]|[^\s()]+')
number_pattern = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')

def tokenize(src: str) -> list[str]:
  return token_pattern.findall(src)

def parse_atom(token: str) -> Sexpr:
  if number_pattern.fullmatch(token):
    return Number(float(token))
  return Symbol(token)

def parse_tokens(tokens: Sequence[str]) -> list[Sexpr]:
  # stack[0] collects the top-level forms; len(stack) - 1 is the nesting depth
  stack: list[list[Sexpr]] = [[]]
  for position, token in enumerate(tokens):
    if token == '(':
      stack.append([])
    elif token == ')':
      if len(stack) == 1:
        raise UnmatchedCloseParenError(f'Unmatched closing parenthesis at token {position}', position=position)
      items = stack.pop()
      stack[-1].append(SList(items))
    else:
      stack[-1].append(parse_atom(token))

  depth = len(stack) - 1
  if depth > 0:
    raise UnclosedParenError(f'Unmatched opening parenthesis ({depth} unclosed)', depth=depth)
  return stack[0]

def parse(src: str) -> list[Sexpr]:
  return parse_tokens(tokenize(src))

def stringify(value: Optional[RuntimeValue]) -> str:
  if value is None:
    return 'None'
  return value.external()

def stringify_bindings(env: Env, *, include_lambdas: bool) -> list[str]:
  visible = [(name, value) for name, value in env.names.items()
    if not isinstance(value, NativeFunction)
    and (include_lambdas or not isinstance(value, Procedure))]
  if len(visible):
    longest_name_len = max(len(name) for name, _ in visible)
    return [f'{name:>{longest_name_len}}: {stringify(value)}' for name, value in visible]
  return []

def stringify_callstack(callstack: list[Tuple[Env, Sexpr]], *, include_bindings: bool=False, include_lambdas: bool=False) -> str:
  lines: list[str] = []
  base_indent = len(str(len(callstack)))
  for i, [env, sexpr] in enumerate(callstack):
    if include_bindings:
      bindings_lines = [' ' * (2 + base_indent) + x for x in stringify_bindings(env, include_lambdas=include_lambdas)]
      if len(bindings_lines):
        lines.append('')
        lines += bindings_lines
        lines.append('')
    lines.append(f"{i: >{base_indent}}. {sexpr.external()}")
  return '\n'.join(lines)

def seval(env: Env, sexpr: Sexpr) -> Optional[RuntimeValue]:
  with env.log_call(sexpr) as env:
    if isinstance(sexpr, Number):
      return Value(sexpr.value)

    if isinstance(sexpr, Symbol):
      value = env.lookup(sexpr.value)
      if value is None:
        raise UnboundSymbolError(f'unbound symbol: {sexpr.value}', symbol=sexpr.value)
      return value

    if not len(sexpr):
      raise EmptyApplicationError('cannot apply the empty list ()')

    first = sexpr[0]

    if Symbol('define') == first:
      if len(sexpr) != 3:
        raise MalformedFormError(f'define requires a name and a value: {sexpr.external()}')
      name = assert_name(sexpr[1], 'define')
      env.define(name, assert_not_none(seval(env, sexpr[2])))
      return None

    if Symbol('lambda') == first:
      if len(sexpr) != 3 or not isinstance(sexpr[1], SList):
        raise MalformedFormError(f'lambda requires a parameter list and a body: {sexpr.external()}')
      params = [assert_name(param, 'lambda') for param in sexpr[1]]
      if len(set(params)) != len(params):
        raise MalformedFormError(f'lambda parameters must be distinct: {sexpr[1].external()}')
      logger.debug('closure created: params=(%s), env=%#x', ' '.join(params), id(env))
      return Procedure(params, sexpr[2], env)

    if Symbol('if') == first:
      if len(sexpr) != 4:
        raise MalformedFormError(f'if requires a condition and two branches: {sexpr.external()}')
      _, condition, consequent, alternative = sexpr
      if is_truthy(assert_not_none(seval(env, condition))):
        return seval(env, consequent)
      return seval(env, alternative)

    fn = assert_not_none(seval(env, first))
    args = [assert_not_none(seval(env, arg)) for arg in sexpr[1:]]
    return apply(fn, args)

def apply(fn: RuntimeValue, args: list[RuntimeValue]) -> Optional[RuntimeValue]:
  if isinstance(fn, NativeFunction):
    if len(args) != NATIVE_ARITY:
      raise ArityMismatchError(f'{fn.external()} expects {NATIVE_ARITY} arguments, got {len(args)}',
        expected=NATIVE_ARITY, got=len(args))
    return fn.fn(*args)

  if isinstance(fn, Procedure):
    if len(args) != len(fn.params):
      raise ArityMismatchError(f'{fn.external()} expects {len(fn.params)} arguments, got {len(args)}',
        expected=len(fn.params), got=len(args))
    # chained to the captured env, not the caller's
    frame = fn.env.child()
    for param, arg in zip(fn.params, args):
      frame.define(param, arg)
    logger.debug('calling %s in frame %#x (parent %#x)', fn.external(), id(frame), id(fn.env))
    return seval(frame, fn.body)

  raise NotCallableError(f'{fn.external()} is not callable')

Result = Union[Optional[RuntimeValue], EvalError]

def evaluate_forms(forms: Iterable[Sexpr], env: Env, *, fail_fast: bool=True) -> Iterator[Result]:
  for form in forms:
    try:
      yield seval(env, form)
    except EvalError as e:
      if fail_fast:
        raise
      logger.warning('form %s failed: %s', form.external(), e.message)
      yield e

def evaluate_program(source: str, env: Optional[Env]=None, *, fail_fast: bool=True) -> list[Result]:
  """Evaluate every top-level form of `source` in one shared global env.

  Returns one result per form: a runtime value, None for `define`, or (only
  when `fail_fast` is False) the EvalError that aborted that form. Parse
  errors are always raised.
  """
  env = env if env is not None else standard_env()
  return list(evaluate_forms(parse(source), env, fail_fast=fail_fast))

def run(src: str, env: Optional[Env]=None):
  env = env or standard_env()
  results = evaluate_program(src, env)
  return env, results[-1] if results else None

def print_error(e: SexpiError):
  if isinstance(e, EvalError) and e.callstack:
    print(stringify_callstack(e.callstack))
  print(f'Error ({e.kind}): {e.message}')

def execute(src: str, env: Env, *, fail_fast: bool) -> bool:
  ok = True
  try:
    for result in evaluate_forms(parse(src), env, fail_fast=fail_fast):
      if isinstance(result, EvalError):
        print_error(result)
        ok = False
      elif result is not None:
        print(stringify(result))
  except SexpiError as e:
    print_error(e)
    return False
  return ok

def repl():
  env = standard_env()
  input_buffer = ''
  input_depth = 0

  while True:
    prompt = '> ' if input_depth == 0 else '  ' * input_depth + '  '
    print(prompt, end='', flush=True)
    line = stdin.readline()
    if not line:
      print()
      break
    input_buffer += line
    try:
      try:
        env, result = run(input_buffer, env)
        if result is not None:
          print(stringify(result))
        print()
        input_buffer = ''
        input_depth = 0
      except UnclosedParenError as e:
        input_depth = e.depth
    except EvalError as e:
      if e.callstack:
        print(stringify_callstack(e.callstack, include_bindings=True, include_lambdas=False))
      print(f'Error ({e.kind}): {e.message}')
      print('  Traceback shown above.')
      print()
      input_buffer = ''
      input_depth = 0
    except ParseError as e:
      print(f'Error ({e.kind}): {e.message}')
      print()
      input_buffer = ''
      input_depth = 0
    except Exception:
      traceback.print_exc()
      print()
      input_buffer = ''
      input_depth = 0

def main(argv: Optional[list[str]]=None) -> int:
  parser = argparse.ArgumentParser(prog='sexpi', description='An interpreter for a small S-expression language')
  parser.add_argument('files', nargs='*', help='source files, evaluated in order in one global environment')
  parser.add_argument('-k', '--keep-going', action='store_true', help='continue with the next form after an error')
  parser.add_argument('-v', '--verbose', action='store_true', help='log evaluator debug output')
  args = parser.parse_args(argv)

  logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
    format='%(levelname)s %(name)s: %(message)s')

  if not args.files:
    if stdin.isatty():
      repl()
      return 0
    return 0 if execute(stdin.read(), standard_env(), fail_fast=not args.keep_going) else 1

  env = standard_env()
  ok = True
  for path in args.files:
    with open(path, 'r') as f:
      if not execute(f.read(), env, fail_fast=not args.keep_going):
        ok = False
        if not args.keep_going:
          break
  return 0 if ok else 1

if __name__ == '__main__':
  raise SystemExit(main())
