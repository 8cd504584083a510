#!/usr/bin/env python3
"""
intcode.py - An Intcode virtual machine.

A growable tape of integers, an instruction pointer, a relative base,
an input queue and an output buffer. Nothing else.

Architecture:
  - Machine owns all state; callers seed memory and input, then call run()
  - run() repeats step() until the machine halts or blocks on input
  - Each step builds a Cursor over the instruction and reads its operands
    one tape slot at a time, in order: first operand, second, destination
  - A blocked input read is not an error: the machine reports YIELDED and
    the same instruction is retried on the next run()

Instruction word: the low two decimal digits are the opcode, the hundreds,
thousands and ten-thousands digits are the modes of parameters 1, 2, 3.

Modes:
  0  positional   operand is an address
  1  immediate    operand is the value
  2  relative     operand is an address offset by the relative base

Instruction set:
  1   ADD  a b -> c     c = a + b
  2   MUL  a b -> c     c = a * b
  3   IN   -> c         c = next input, or yield if there is none
  4   OUT  a            append a to the output buffer
  5   JNZ  a b          jump to b if a != 0
  6   JZ   a b          jump to b if a == 0
  7   LT   a b -> c     c = 1 if a < b else 0
  8   EQ   a b -> c     c = 1 if a == b else 0
  9   ARB  a            relative base += a
  99  HALT
"""

import argparse
import logging
import sys
from collections import deque
from enum import Enum, IntEnum

logger = logging.getLogger(__name__)

HALT = 99
GROWTH_FACTOR = 2

# opcode -> (mnemonic, parameter count)
OPCODES = {
    1:    ('ADD',  3),
    2:    ('MUL',  3),
    3:    ('IN',   1),
    4:    ('OUT',  1),
    5:    ('JNZ',  2),
    6:    ('JZ',   2),
    7:    ('LT',   3),
    8:    ('EQ',   3),
    9:    ('ARB',  1),
    HALT: ('HALT', 0),
}


class IntcodeError(Exception):
    pass


class UnknownOpcode(IntcodeError):
    def __init__(self, opcode: int, word: int, address: int):
        super().__init__(f'Unknown opcode {opcode} at position {address}')
        self.opcode  = opcode
        self.word    = word
        self.address = address


class Mode(IntEnum):
    POSITIONAL = 0
    IMMEDIATE  = 1
    RELATIVE   = 2


class Status(Enum):
    RUNNING = 'running'
    YIELDED = 'yielded'
    HALTED  = 'halted'


# ── Decoding ──────────────────────────────────────────────────────────────────

def opcode_of(word: int) -> int:
    # Negative words give a negative opcode.
    if word < 0:
        return -(-word % 100)
    return word % 100


def mode_of(word: int, n: int) -> Mode:
    """Mode of parameter n (1-based). Unknown digits fall back to positional."""
    digit = abs(word) // (10 ** (n + 1)) % 10
    try:
        return Mode(digit)
    except ValueError:
        return Mode.POSITIONAL


class Cursor:
    """
    Reads the operands of the instruction at `start`.

    Every read_* call advances exactly one tape slot, so operands must be
    read in instruction order. After the last read, `pos` is the address of
    the final operand and the next instruction starts at pos + 1.
    """

    def __init__(self, machine: 'Machine', start: int):
        self.machine = machine
        self.start   = start
        self.pos     = start
        self.word    = machine._fetch(start)
        self.opcode  = opcode_of(self.word)

    def mode(self, n: int) -> Mode:
        return mode_of(self.word, n)

    def read_parameter(self, mode: Mode) -> int:
        self.pos += 1
        m = self.machine
        if mode == Mode.IMMEDIATE:
            addr = self.pos
        elif mode == Mode.RELATIVE:
            addr = m.relative_base + m._fetch(self.pos)
        else:
            addr = m._fetch(self.pos)
        return m._fetch(addr)

    def read_destination(self, mode: Mode) -> int:
        # Output parameters are never immediate: mode 1 acts like mode 0.
        self.pos += 1
        operand = self.machine._fetch(self.pos)
        if mode == Mode.RELATIVE:
            return self.machine.relative_base + operand
        return operand


# ── Machine ───────────────────────────────────────────────────────────────────

class Machine:
    def __init__(self, memory):
        self.tape:   list   = list(memory)
        self.ip             = 0
        self.relative_base  = 0
        self.inputs: deque  = deque()
        self.output: list   = []
        self.status: Status = Status.RUNNING

    # ── Builder ───────────────────────────────────────────────────────────────

    def with_zeroth(self, value: int) -> 'Machine':
        self.poke(0, value)
        return self

    def with_init(self, noun: int, verb: int) -> 'Machine':
        self.poke(1, noun)
        self.poke(2, verb)
        return self

    def with_input(self, value: int) -> 'Machine':
        self.add_input(value)
        return self

    def with_inputs(self, values) -> 'Machine':
        self.add_inputs(values)
        return self

    # ── Input ─────────────────────────────────────────────────────────────────

    def add_input(self, value: int):
        if self.status is Status.HALTED:
            logger.debug('halted; discarding input %d', value)
            return
        self.status = Status.RUNNING
        self.inputs.append(value)

    def add_inputs(self, values):
        for v in values:
            self.add_input(v)

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def halted(self) -> bool:
        return self.status is Status.HALTED

    @property
    def yielded(self) -> bool:
        return self.status is Status.YIELDED

    @property
    def has_output(self) -> bool:
        return len(self.output) > 0

    @property
    def memory(self) -> list:
        return list(self.tape)

    # ── Memory ────────────────────────────────────────────────────────────────

    def _grow(self, addr: int):
        if addr < 0:
            raise IntcodeError(f'Negative address: {addr}')
        if addr >= len(self.tape):
            size = GROWTH_FACTOR * addr + 1
            logger.debug('grew tape %d -> %d', len(self.tape), size)
            self.tape.extend([0] * (size - len(self.tape)))

    def _fetch(self, addr: int) -> int:
        self._grow(addr)
        return self.tape[addr]

    def _store(self, addr: int, value: int):
        self._grow(addr)
        self.tape[addr] = value

    def peek(self, addr: int) -> int:
        """Read a cell without growing the tape; unwritten cells read 0."""
        if addr < 0:
            raise IntcodeError(f'Negative address: {addr}')
        return self.tape[addr] if addr < len(self.tape) else 0

    def poke(self, addr: int, value: int):
        self._store(addr, value)

    # ── Execution ─────────────────────────────────────────────────────────────

    def step(self):
        """Decode and execute the instruction at ip."""
        if self.status is Status.HALTED:
            return
        cur = Cursor(self, self.ip)
        op  = cur.opcode
        if op not in OPCODES:
            raise UnknownOpcode(op, cur.word, cur.start)
        logger.debug('ip=%d word=%d %s', cur.start, cur.word, OPCODES[op][0])

        if op in (1, 2, 7, 8):
            a    = cur.read_parameter(cur.mode(1))
            b    = cur.read_parameter(cur.mode(2))
            dest = cur.read_destination(cur.mode(3))
            if   op == 1: value = a + b
            elif op == 2: value = a * b
            elif op == 7: value = 1 if a < b else 0
            else:         value = 1 if a == b else 0
            self._store(dest, value)

        elif op == 3:
            dest = cur.read_destination(cur.mode(1))
            if not self.inputs:
                # ip stays on this instruction; it runs again once input arrives
                self.status = Status.YIELDED
                logger.debug('yielded at ip=%d', cur.start)
                return
            self._store(dest, self.inputs.popleft())

        elif op == 4:
            self.output.append(cur.read_parameter(cur.mode(1)))

        elif op in (5, 6):
            a = cur.read_parameter(cur.mode(1))
            b = cur.read_parameter(cur.mode(2))
            if (a != 0) == (op == 5):
                self.ip = b
                return

        elif op == 9:
            self.relative_base += cur.read_parameter(cur.mode(1))

        else:
            self.status = Status.HALTED
            logger.debug('halted at ip=%d', cur.start)
            return

        self.ip = cur.pos + 1

    def _run(self):
        self.output = []
        if self.status is Status.HALTED:
            return
        self.status = Status.RUNNING
        while self.status is Status.RUNNING:
            self.step()

    def run(self) -> list:
        """Run until halted or blocked on input; return this run's output."""
        self._run()
        return list(self.output)

    def run_for_target(self, target: int) -> int:
        """Run like run(), then return the value at address `target`."""
        self._run()
        return self.peek(target)


# ── Loading ───────────────────────────────────────────────────────────────────

def parse_program(text: str) -> list:
    tokens = [t.strip() for t in text.strip().split(',')]
    if tokens[-1] == '':
        tokens.pop()
    program = []
    for i, tok in enumerate(tokens):
        try:
            program.append(int(tok))
        except ValueError:
            raise IntcodeError(f'Bad integer at index {i}: {tok!r}') from None
    return program


def load_program(path) -> list:
    with open(path, encoding='utf-8') as f:
        return parse_program(f.read())


# ── Disassembly ───────────────────────────────────────────────────────────────

def _operand(mode: Mode, value: int) -> str:
    if mode == Mode.IMMEDIATE:
        return str(value)
    if mode == Mode.RELATIVE:
        return f'[rb{value:+d}]'
    return f'[{value}]'


def disassemble(tape) -> str:
    tape  = list(tape)
    lines = []
    at    = 0
    while at < len(tape):
        word = tape[at]
        op   = opcode_of(word)
        if op not in OPCODES:
            lines.append(f'{at:>5}  DATA {word}')
            at += 1
            continue
        name, count = OPCODES[op]
        parts = []
        for n in range(1, count + 1):
            slot = at + n
            if slot < len(tape):
                parts.append(_operand(mode_of(word, n), tape[slot]))
            else:
                parts.append('?')
        lines.append(f'{at:>5}  {name:<4} {", ".join(parts)}'.rstrip())
        at += 1 + count
    return '\n'.join(lines)


# ── Tests ─────────────────────────────────────────────────────────────────────

COMPARE_8 = [3, 21, 1008, 21, 8, 20, 1005, 20, 22, 107, 8, 21, 20, 1006, 20, 31,
             1106, 0, 36, 98, 0, 0, 1002, 21, 125, 20, 4, 20, 1105, 1, 46, 104,
             999, 1105, 1, 46, 1101, 1000, 1, 20, 4, 20, 1105, 1, 46, 98, 99]

QUINE = [109, 1, 204, -1, 1001, 100, 1, 100, 1008, 100, 16, 101, 1006, 101, 0, 99]


def run_tests():
    # (description, tape, inputs, expected): expected is the output list,
    # or {addr: value} for cells checked after the run
    cases = [
        # Arithmetic, checked by memory cell
        ('add then mul',      [1, 9, 10, 3, 2, 3, 11, 0, 99, 30, 40, 50], [], {0: 3500}),
        ('add positional',    [1, 0, 0, 0, 99],                           [], {0: 2}),
        ('mul positional',    [2, 3, 0, 3, 99],                           [], {3: 6}),
        ('mul square',        [2, 4, 4, 5, 99, 0],                        [], {5: 9801}),
        ('self-modifying',    [1, 1, 1, 4, 99, 5, 6, 0, 99],              [], {0: 30}),
        ('mixed modes',       [1002, 4, 3, 4, 33],                        [], {4: 99}),
        ('negative operand',  [1101, 100, -1, 4, 0],                      [], {4: 99}),

        # Input / output
        ('echo',              [3, 0, 4, 0, 99],                           [1234], [1234]),

        # Comparison, positional and immediate
        ('eq 8 pos, 8',       [3, 9, 8, 9, 10, 9, 4, 9, 99, -1, 8],       [8],  [1]),
        ('eq 8 pos, 5',       [3, 9, 8, 9, 10, 9, 4, 9, 99, -1, 8],       [5],  [0]),
        ('lt 8 pos, 5',       [3, 9, 7, 9, 10, 9, 4, 9, 99, -1, 8],       [5],  [1]),
        ('lt 8 pos, 80',      [3, 9, 7, 9, 10, 9, 4, 9, 99, -1, 8],       [80], [0]),
        ('eq 8 imm, 8',       [3, 3, 1108, -1, 8, 3, 4, 3, 99],           [8],  [1]),
        ('eq 8 imm, 9',       [3, 3, 1108, -1, 8, 3, 4, 3, 99],           [9],  [0]),
        ('lt 8 imm, 5',       [3, 3, 1107, -1, 8, 3, 4, 3, 99],           [5],  [1]),
        ('lt 8 imm, 9',       [3, 3, 1107, -1, 8, 3, 4, 3, 99],           [9],  [0]),

        # Jumps
        ('jz pos, 0',    [3, 12, 6, 12, 15, 1, 13, 14, 13, 4, 13, 99, -1, 0, 1, 9], [0],   [0]),
        ('jz pos, 999',  [3, 12, 6, 12, 15, 1, 13, 14, 13, 4, 13, 99, -1, 0, 1, 9], [999], [1]),
        ('jnz imm, 0',   [3, 3, 1105, -1, 9, 1101, 0, 0, 12, 4, 12, 99, 1],         [0],   [0]),
        ('jnz imm, 999', [3, 3, 1105, -1, 9, 1101, 0, 0, 12, 4, 12, 99, 1],         [999], [1]),
        ('compare 7',    COMPARE_8, [7], [999]),
        ('compare 8',    COMPARE_8, [8], [1000]),
        ('compare 9',    COMPARE_8, [9], [1001]),

        # Relative base
        ('relative out',      [109, 21, 204, -19, 99],                    [], [204]),
        ('quine',             QUINE,                                      [], QUINE),

        # Large values
        ('large mul',         [1102, 34915192, 34915192, 7, 4, 7, 99, 0], [], [1219070632396864]),
        ('large literal',     [104, 1125899906842624, 99],                [], [1125899906842624]),

        # Growth
        ('read past end',     [4, 1000, 99],                              [], [0]),
        ('write past end',    [1101, 2, 3, 50, 4, 50, 99],                [], [5]),
    ]

    passed = 0
    failures = []

    for desc, tape, inputs, expected in cases:
        m = Machine(tape).with_inputs(inputs)
        try:
            if isinstance(expected, dict):
                m.run()
                got = {addr: m.peek(addr) for addr in expected}
            else:
                got = m.run()
        except IntcodeError as e:
            got = f'Error: {e}'
        if got == expected and m.halted:
            passed += 1
        else:
            failures.append((desc, inputs, expected, got))

    print(f'Tests: {passed}/{len(cases)} passed')
    for desc, inputs, exp, got in failures:
        print(f'  FAIL: {desc} inputs={inputs}')
        print(f'    exp: {exp!r}')
        print(f'    got: {got!r}')
    return passed, len(cases)


# ── Interactive session ───────────────────────────────────────────────────────

def _print_outputs(values):
    for v in values:
        print(v)


def interact(machine: Machine):
    """Prompt for input each time the machine blocks, until it halts or EOF."""
    while machine.yielded:
        try:
            line = input('in> ').strip()
        except EOFError:
            break
        except KeyboardInterrupt:
            print('\nInterrupted')
            break
        try:
            value = int(line)
        except ValueError:
            print(f'not an integer: {line!r}')
            continue
        machine.add_input(value)
        _print_outputs(machine.run())


# ── Command line ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='intcode', description='Run an Intcode program.')
    p.add_argument('program', nargs='?', help='comma-separated program file')
    p.add_argument('-i', '--input', type=int, action='append', metavar='N',
                   help='queue an input value (repeatable)')
    p.add_argument('--zeroth', type=int, metavar='N', help='set address 0 before running')
    p.add_argument('--noun', type=int, metavar='N', help='set address 1 before running')
    p.add_argument('--verb', type=int, metavar='N', help='set address 2 before running')
    p.add_argument('--target', type=int, metavar='ADDR',
                   help='print the value at ADDR after the run')
    p.add_argument('--see', action='store_true', help='print a disassembly and exit')
    p.add_argument('--interactive', action='store_true',
                   help='prompt for input whenever the program waits for it')
    p.add_argument('--test', action='store_true', help='run the built-in scenarios')
    p.add_argument('-v', '--verbose', action='store_true', help='log every instruction')
    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    if args.test:
        p, t = run_tests()
        return 0 if p == t else 1
    if args.program is None:
        parser.error('PROGRAM is required unless --test is given')
    if (args.noun is None) != (args.verb is None):
        parser.error('--noun and --verb must be given together')

    try:
        tape = load_program(args.program)
        if args.see:
            print(disassemble(tape))
            return 0

        machine = Machine(tape).with_inputs(args.input or [])
        if args.zeroth is not None:
            machine.with_zeroth(args.zeroth)
        if args.noun is not None:
            machine.with_init(args.noun, args.verb)

        _print_outputs(machine.run())
        if machine.yielded and args.interactive:
            interact(machine)
        if args.target is not None:
            print(f'{args.target}: {machine.peek(args.target)}')
    except (IntcodeError, OSError) as e:
        print(f'error: {e}', file=sys.stderr)
        return 1

    if machine.yielded:
        print(f'waiting for input at ip={machine.ip}', file=sys.stderr)
        return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
