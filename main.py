import argparse
import logging
import sys

import matplotlib.pyplot as plt

from mathcalc import CalcError, MathCalc, calculate

logger = logging.getLogger(__name__)

DEFAULT_X_MIN = -10
DEFAULT_X_MAX = 10
PLOT_SAMPLES = 10000

PLOT_USAGE = 'PLOT <expression> [, <x_from=-10>, <x_to=10>]'


def format_result(result: float) -> str:
    """
    Fixed six decimals for ordinary magnitudes, the shortest general form for
    zero, very small, very large and non-finite results.
    """
    if 1e-6 <= abs(result) <= 1e10:
        return f'{result:.6f}'
    return f'{result:g}'


################
## Calculator ##
################

class Calculator():
    def __init__(self, x: float = 0.0, x_min: float = DEFAULT_X_MIN,
                 x_max: float = DEFAULT_X_MAX, samples: int = PLOT_SAMPLES):
        self.x = x
        self.x_min = x_min
        self.x_max = x_max
        self.samples = samples
        self.commands = {
            'EXIT': self._exit,
            'PLOT': self._plot,
            'X': self._set_x,
        }

    def _exit(self, args: str):
        """Syntax: EXIT"""
        raise SystemExit()

    def _set_x(self, args: str) -> str:
        """Syntax: X [=] <expression>

        Sets the value substituted for x in later evaluations. The value may
        itself be an expression, evaluated with the current x.
        """
        expression = args.removeprefix('=').strip()
        if not expression:
            raise ValueError('Syntax error. Correct usage:\n  X [=] <expression>')
        self.x = calculate(expression, self.x)
        return f'x = {format_result(self.x)}'

    def _plot(self, args: str) -> str:
        """Syntax: PLOT <expression> [, <x_from=-10>, <x_to=10>]

        Plots the graph of the expression over x using matplotlib without
        blocking the main thread. The expression is parsed once and sampled
        at evenly spaced points; any failing sample cancels the plot.
        """
        parts = [arg.strip() for arg in args.split(',')]

        try:
            if len(args) == 0 or len(parts) > 3:
                raise ValueError

            expression = parts[0]
            x_min = float(parts[1]) if len(parts) > 1 else self.x_min
            x_max = float(parts[2]) if len(parts) > 2 else self.x_max
        except ValueError:
            raise ValueError(f'Syntax error. Correct usage:\n  {PLOT_USAGE}')

        xs, ys = MathCalc(expression).calculate_range(x_min, x_max, self.samples)
        logger.info('plotting %r with %d samples', expression, len(xs))

        plt.plot(xs, ys)
        plt.xlabel('x')
        plt.ylabel(f'y = {expression}')
        plt.title(f'Graph of y = {expression}, x ∈ [{x_min:g}, {x_max:g}]')
        plt.grid(True)
        plt.show(block=False)
        return f'Plotted {expression} over [{x_min:g}, {x_max:g}]'

    def handle(self, line: str) -> str | None:
        """
        Runs one line of input. Commands are identified by the first word of
        the line; anything else is evaluated as an expression.
        """
        parts = line.split(maxsplit=1)
        if parts and parts[0] in self.commands:
            return self.commands[parts[0]](parts[1] if len(parts) > 1 else '')
        return format_result(calculate(line, self.x))

    def run(self):
        """The read-eval-print loop."""
        try:
            while True:
                try:
                    line = input('\n>>> ').strip()
                    if not line:
                        continue

                    output = self.handle(line)
                    if output is not None:
                        print(output)
                except SystemExit:
                    break
                except (CalcError, ValueError) as e:
                    print(e)
        except (KeyboardInterrupt, EOFError):
            pass


################
## Entrypoint ##
################

def main(argv: 'list[str] | None' = None) -> int:
    parser = argparse.ArgumentParser(description='Expression calculator with plotting')

    parser.add_argument(
        'expression',
        nargs='?',
        help='Evaluate a single line and exit instead of starting the prompt'
    )
    parser.add_argument(
        '--x',
        type=float,
        default=0.0,
        help='Value substituted for x (default: 0)'
    )
    parser.add_argument(
        '--x-min',
        type=float,
        default=DEFAULT_X_MIN,
        help=f'Default lower bound for PLOT (default: {DEFAULT_X_MIN})'
    )
    parser.add_argument(
        '--x-max',
        type=float,
        default=DEFAULT_X_MAX,
        help=f'Default upper bound for PLOT (default: {DEFAULT_X_MAX})'
    )
    parser.add_argument(
        '--samples',
        type=int,
        default=PLOT_SAMPLES,
        help=f'Number of points sampled by PLOT (default: {PLOT_SAMPLES})'
    )
    parser.add_argument(
        '--log-level',
        default='WARNING',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging verbosity (default: WARNING)'
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    calculator = Calculator(args.x, args.x_min, args.x_max, args.samples)

    if args.expression is not None:
        try:
            output = calculator.handle(args.expression)
        except (CalcError, ValueError) as e:
            print(e)
            return 1
        if output is not None:
            print(output)
        return 0

    calculator.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
